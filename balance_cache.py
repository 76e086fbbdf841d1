# balance_cache.py: client-side mirror of the three currencies
#
# Gameplay mutates this instantly; every mutation is persisted to a local
# JSON file right away so a crash before the next sync loses nothing.
# The server snapshot always wins when a sync lands.
import os, json, threading, logging

from rates import CURRENCIES, to_wire

logger = logging.getLogger(__name__)


def _zeros():
    return {c: 0 for c in CURRENCIES}


class BalanceCache:
    def __init__(self, path=None):
        self.path = path or os.environ.get("CLICKER_CACHE_PATH", "balance_cache.json")
        self.lock = threading.RLock()
        self._balances = _zeros()
        self._earned = _zeros()
        self._spent = _zeros()
        self._clicks = 0
        self._active_seconds = 0.0
        self._dirty = False
        # cold start: the first sync asks the server for offline accrual
        self._returning = True
        self._load()

    # ---------- local persistence ----------
    def _load(self):
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, ValueError):
            logger.warning("local balance cache %s unreadable, starting empty", self.path)
            return
        for c in CURRENCIES:
            self._balances[c] = max(0, int((doc.get("balances") or {}).get(c) or 0))
            self._earned[c] = max(0, int((doc.get("earned") or {}).get(c) or 0))
            self._spent[c] = max(0, int((doc.get("spent") or {}).get(c) or 0))
        self._clicks = max(0, int(doc.get("clicks") or 0))
        self._active_seconds = max(0.0, float(doc.get("active_seconds") or 0.0))
        self._dirty = bool(doc.get("dirty"))

    def _save(self):
        doc = {
            "balances": self._balances,
            "earned": self._earned,
            "spent": self._spent,
            "clicks": self._clicks,
            "active_seconds": self._active_seconds,
            "dirty": self._dirty,
        }
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def _mark_dirty(self):
        self._dirty = True
        self._save()

    @staticmethod
    def _check(currency, amount):
        if currency not in CURRENCIES:
            raise ValueError(f"unknown currency {currency!r}")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValueError(f"amount must be a non-negative int, got {amount!r}")

    # ---------- gameplay API ----------
    def credit(self, currency, amount):
        self._check(currency, amount)
        with self.lock:
            self._balances[currency] += amount
            self._earned[currency] += amount
            self._mark_dirty()

    def debit(self, currency, amount):
        """Spend amount; returns False (and changes nothing) if funds are short."""
        self._check(currency, amount)
        with self.lock:
            if self._balances[currency] < amount:
                logger.debug("insufficient %s: have %d need %d", currency, self._balances[currency], amount)
                return False
            self._balances[currency] -= amount
            self._spent[currency] += amount
            self._mark_dirty()
            return True

    def record_click(self, n=1):
        with self.lock:
            self._clicks += int(n)
            self._mark_dirty()

    def add_active_time(self, seconds):
        with self.lock:
            self._active_seconds += max(0.0, float(seconds))

    def current_balances(self):
        with self.lock:
            return dict(self._balances)

    @property
    def dirty(self):
        with self.lock:
            return self._dirty

    @property
    def returning(self):
        with self.lock:
            return self._returning

    def session_summary(self):
        with self.lock:
            return {
                "clicks": self._clicks,
                "active_seconds": self._active_seconds,
                "earned": dict(self._earned),
                "spent": dict(self._spent),
            }

    # ---------- sync plumbing ----------
    def build_sync_request(self):
        """Return (wire body, sent marker) for POST /user/sync."""
        with self.lock:
            sent = self.session_summary()
            body = {
                "sessionData": to_wire(sent["earned"]),
                "sessionSpent": to_wire(sent["spent"]),
                "clickCount": sent["clicks"],
                "sessionDuration": sent["active_seconds"],
                "isReturningPlayer": self._returning,
            }
            return body, sent

    def apply_server_totals(self, totals, sent=None):
        """
        Overwrite balances with the server snapshot.

        `sent` is the marker from build_sync_request; the part of the session
        accumulators it covers is dropped. Anything gameplay did while the
        request was in flight stays pending and is re-applied on top of the
        server totals, keeping the cache dirty for the next sync.
        """
        with self.lock:
            if sent is not None:
                for c in CURRENCIES:
                    self._earned[c] = max(0, self._earned[c] - sent["earned"][c])
                    self._spent[c] = max(0, self._spent[c] - sent["spent"][c])
                self._clicks = max(0, self._clicks - sent["clicks"])
                self._active_seconds = max(0.0, self._active_seconds - sent["active_seconds"])
                self._returning = False
            for c in CURRENCIES:
                base = int(totals.get(c) or 0)
                self._balances[c] = max(0, base + self._earned[c] - self._spent[c])
            self._dirty = bool(self._clicks or any(self._earned.values()) or any(self._spent.values()))
            self._save()

    def seed(self, totals):
        """Load an authoritative snapshot (e.g. right after login)."""
        self.apply_server_totals(totals)
