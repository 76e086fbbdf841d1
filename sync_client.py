# sync_client.py: HTTP transport + background sync scheduler for the client
#
# The application root builds one BalanceCache, one SyncTransport and one
# SyncScheduler and hands them to gameplay code. At most one request that
# rewrites the cache is in flight at any time.
import os, time, threading, logging
from concurrent.futures import ThreadPoolExecutor

import requests

from errors import (
    ClickerError, BadPayload, AuthenticationRequired, AccountNotFound,
    WindowConflict, SuspiciousInput, NetworkFailure, SyncInProgress,
    InsufficientFunds, AlreadyOwned, BadUpgrade,
)
from rates import from_wire

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE = {cls.code: cls for cls in (
    BadPayload, AuthenticationRequired, AccountNotFound, WindowConflict,
    SuspiciousInput, InsufficientFunds, AlreadyOwned, BadUpgrade,
)}
_ERRORS_BY_STATUS = {
    400: BadPayload,
    401: AuthenticationRequired,
    403: AuthenticationRequired,
    404: AccountNotFound,
    409: WindowConflict,
    422: SuspiciousInput,
}


class SyncTransport:
    def __init__(self, base_url=None, timeout=None, session=None):
        self.base_url = (base_url or os.environ.get("CLICKER_API_URL", "http://127.0.0.1:5000")).rstrip("/")
        self.timeout = float(timeout or os.environ.get("CLICKER_SYNC_TIMEOUT", "10"))
        self.http = session or requests.Session()

    def _request(self, method, path, payload=None):
        url = self.base_url + path
        try:
            r = self.http.request(method, url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            raise NetworkFailure(f"timeout after {self.timeout}s: {e}")
        except requests.RequestException as e:
            raise NetworkFailure(str(e))
        try:
            body = r.json()
        except ValueError:
            body = {}
        return r.status_code, body if isinstance(body, dict) else {}

    def _call(self, method, path, payload=None):
        status, body = self._request(method, path, payload)
        if status < 400 and body.get("ok", True):
            return body
        if status >= 500:
            raise NetworkFailure(f"server error {status}", status_code=status)
        code = body.get("err") or ""
        cls = _ERRORS_BY_CODE.get(code) or _ERRORS_BY_STATUS.get(status, ClickerError)
        extra = {k: v for k, v in body.items() if k not in ("ok", "err")}
        raise cls(code or f"http {status}", **extra)

    # ---------- auth collaborator ----------
    def register(self, username, password):
        return self._call("POST", "/register", {"username": username, "password": password})

    def login(self, username, password):
        return self._call("POST", "/login", {"username": username, "password": password})

    def logout(self):
        return self._call("POST", "/logout")

    # ---------- game endpoints ----------
    def profile(self):
        return self._call("GET", "/user")

    def sync(self, body):
        return self._call("POST", "/user/sync", body)

    def preview_offline(self):
        return self._call("GET", "/user/offline-earnings")

    def claim_offline(self, watched_ad=False):
        return self._call("POST", "/user/claim-offline", {"watchedAd": bool(watched_ad)})

    def buy_upgrade(self, name):
        return self._call("POST", f"/user/upgrade/{name}")

    def close(self):
        self.http.close()


class SyncScheduler:
    """
    Periodic / opportunistic / manual sync of a BalanceCache.

    Background triggers (tick, on_background) only fire when the cache is
    dirty and nothing is in flight; failures are logged and retried on a
    later trigger. sync_now() skips the dirty check and raises on failure.
    """

    def __init__(self, cache, transport, interval=None, max_backoff=600.0, clock=time.monotonic):
        self.cache = cache
        self.transport = transport
        self.interval = float(interval or os.environ.get("CLICKER_SYNC_INTERVAL", "60"))
        self.max_backoff = float(max_backoff)
        self.clock = clock
        self._in_flight = threading.Semaphore(1)
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="clicker-sync")
        self._stop = threading.Event()
        self._timer = None
        self._closed = False
        self._failures = 0
        self._next_allowed = 0.0
        self.last_error = None
        self.last_result = None

    # ---------- timer ----------
    def start(self):
        if self._timer is not None:
            return
        self._timer = threading.Thread(target=self._loop, name="clicker-sync-timer", daemon=True)
        self._timer.start()
        logger.info("auto sync started (every %.0fs)", self.interval)

    def _loop(self):
        while not self._stop.wait(self.interval):
            self.tick()

    # ---------- triggers ----------
    def tick(self):
        """Periodic trigger; returns a Future when a sync was started."""
        if self.clock() < self._next_allowed:
            logger.debug("sync tick skipped: backing off")
            return None
        return self._maybe_start()

    def on_background(self):
        """App lost foreground: try to flush pending changes."""
        return self._maybe_start()

    def _maybe_start(self):
        if self._closed or not self.cache.dirty:
            return None
        if not self._in_flight.acquire(blocking=False):
            return None
        try:
            return self._pool.submit(self._run_background)
        except RuntimeError:
            # pool already shut down
            self._in_flight.release()
            return None

    def _run_background(self):
        try:
            return self._sync_locked()
        except ClickerError as e:
            logger.info("background sync failed, will retry on next trigger: %s", e)
            return None
        finally:
            self._in_flight.release()

    def sync_now(self):
        """Forced sync; raises SyncInProgress or the failure that occurred."""
        if self._closed:
            raise NetworkFailure("sync scheduler closed")
        if not self._in_flight.acquire(blocking=False):
            raise SyncInProgress()
        try:
            return self._sync_locked()
        except ClickerError as e:
            logger.warning("manual sync failed: %s", e)
            raise
        finally:
            self._in_flight.release()

    # ---------- core ----------
    def _sync_locked(self):
        body, sent = self.cache.build_sync_request()
        try:
            result = self.transport.sync(body)
        except ClickerError as e:
            self._record_failure(e)
            raise
        with self.cache.lock:
            # close() takes the same lock, so an abort either lands before
            # this check or after the totals are applied
            if self._closed:
                logger.info("sync response arrived after close, discarded")
                raise NetworkFailure("sync aborted")
            self.cache.apply_server_totals(from_wire(result.get("newTotals") or {}), sent=sent)
        self._failures = 0
        self._next_allowed = 0.0
        self.last_error = None
        self.last_result = result
        logger.debug("sync ok: credited=%s", result.get("totalCredited"))
        return result

    def _record_failure(self, err):
        self._failures += 1
        self.last_error = err
        # first failure retries on the very next tick, then doubles
        if self._failures >= 2:
            delay = min(self.max_backoff, self.interval * 2 ** (self._failures - 2))
            self._next_allowed = self.clock() + delay

    def _exclusive(self, fn):
        if self._closed:
            raise NetworkFailure("sync scheduler closed")
        if not self._in_flight.acquire(blocking=False):
            raise SyncInProgress()
        try:
            return fn()
        finally:
            self._in_flight.release()

    # ---------- one-shot helpers ----------
    def load_from_server(self):
        """Seed the cache from GET /user (call right after login)."""
        def _load():
            body = self.transport.profile()
            game = (body.get("user") or {}).get("gameData") or {}
            self.cache.seed(from_wire(game))
            return body
        return self._exclusive(_load)

    def preview_offline(self):
        return self.transport.preview_offline()

    def claim_offline(self, watched_ad=False):
        def _claim():
            result = self.transport.claim_offline(watched_ad)
            self.cache.seed(from_wire(result.get("newTotals") or {}))
            return result
        return self._exclusive(_claim)

    def buy_upgrade(self, name):
        """Buy an upgrade server-side and seed the cache with the settled totals."""
        def _buy():
            result = self.transport.buy_upgrade(name)
            self.cache.seed(from_wire(result.get("newTotals") or {}))
            return result
        return self._exclusive(_buy)

    def close(self):
        """Stop the timer and abandon any in-flight request; pending changes stay dirty."""
        with self.cache.lock:
            self._closed = True
        self._stop.set()
        try:
            self.transport.close()
        finally:
            self._pool.shutdown(wait=False, cancel_futures=True)
