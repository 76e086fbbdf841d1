# ledger.py: authoritative account ledger (tiny JSON "DB")
#
# One row per account under db["users"]. Every mutation goes through a single
# locked read-check-write, so increments are in place and a stale
# last_update can be detected before anything is written.
import os, json, shutil, threading, time, logging

from errors import AccountNotFound, WindowConflict, InsufficientFunds, AlreadyOwned
from rates import CURRENCIES

logger = logging.getLogger(__name__)


def _empty_db():
    return {"users": {}}


def empty_row(now, pw=None):
    return {
        "pw": pw,
        "carrots": 0,
        "horse_shoes": 0,
        "golden_carrots": 0,
        "upgrades": {},
        "created_at": now,
        "last_update": now,
        "suspicious_syncs": 0,
        "last_flagged_at": None,
    }


def public_row(row):
    """Ledger row without auth material."""
    return {k: v for k, v in row.items() if k != "pw"}


class LedgerStore:
    def __init__(self, path):
        self.path = path
        self.lock = threading.Lock()

    # ---------- file io ----------
    def load(self):
        if not os.path.exists(self.path):
            return _empty_db()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                db = json.load(f)
        except (OSError, ValueError):
            # keep the bad file for inspection instead of silently wiping it
            logger.error("ledger file %s unreadable, trying backup", self.path)
            bak = self.path + ".bak"
            if os.path.exists(bak):
                try:
                    with open(bak, "r", encoding="utf-8") as f:
                        return json.load(f)
                except (OSError, ValueError):
                    logger.error("ledger backup %s unreadable too", bak)
            try:
                os.replace(self.path, self.path + ".bad")
            except OSError:
                pass
            return _empty_db()
        db.setdefault("users", {})
        return db

    def save(self, db):
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(db, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        if os.path.exists(self.path):
            try:
                shutil.copy2(self.path, self.path + ".bak")
            except OSError:
                logger.warning("could not refresh ledger backup")
        os.replace(tmp, self.path)  # atomic on POSIX

    # ---------- queries ----------
    def get(self, account_id):
        with self.lock:
            row = self.load()["users"].get(account_id)
        return dict(row) if row else None

    def require(self, account_id):
        row = self.get(account_id)
        if row is None:
            logger.error("ledger row missing for authenticated account %r", account_id)
            raise AccountNotFound()
        return row

    def create(self, account_id, pw=None, now=None):
        """Create the zero row. Returns False if the account already exists."""
        now = time.time() if now is None else now
        with self.lock:
            db = self.load()
            if account_id in db["users"]:
                return False
            db["users"][account_id] = empty_row(now, pw)
            self.save(db)
        return True

    # ---------- mutations ----------
    def apply_delta(self, account_id, credits, expected_last_update, now,
                    debits=None, flagged=False):
        """
        Add credits (and subtract debits) in place, advance last_update.

        Fails with WindowConflict if the row's last_update is no longer
        expected_last_update. Debits are bounded by what the row holds after
        credits, so a column never goes below zero.
        Returns (row, applied_debits).
        """
        debits = debits or {}
        with self.lock:
            db = self.load()
            row = db["users"].get(account_id)
            if row is None:
                raise AccountNotFound()
            if row.get("last_update") != expected_last_update:
                raise WindowConflict(expected=expected_last_update, actual=row.get("last_update"))
            applied = {}
            for c in CURRENCIES:
                cur = int(row.get(c) or 0) + max(0, int(credits.get(c, 0)))
                spend = min(cur, max(0, int(debits.get(c, 0))))
                row[c] = cur - spend
                applied[c] = spend
            row["last_update"] = max(float(row.get("last_update") or 0.0), float(now))
            if flagged:
                row["suspicious_syncs"] = int(row.get("suspicious_syncs") or 0) + 1
                row["last_flagged_at"] = now
            self.save(db)
            return dict(row), applied

    def purchase_upgrade(self, account_id, key, cost, expected_last_update, now, credits=None):
        """
        Settle the open offline window, then debit cost carrots and set the flag.

        credits is that window's accrual priced at the flags the row held
        before this purchase; last_update moves to now in the same write, so
        the new flag only prices time after it. Nothing is written when the
        purchase fails. Fails with WindowConflict like apply_delta.
        """
        credits = credits or {}
        with self.lock:
            db = self.load()
            row = db["users"].get(account_id)
            if row is None:
                raise AccountNotFound()
            if row.get("last_update") != expected_last_update:
                raise WindowConflict(expected=expected_last_update, actual=row.get("last_update"))
            ups = row.setdefault("upgrades", {})
            if ups.get(key):
                raise AlreadyOwned(key=key)
            settled = {c: int(row.get(c) or 0) + max(0, int(credits.get(c, 0))) for c in CURRENCIES}
            if settled["carrots"] < cost:
                raise InsufficientFunds(need=cost, have=settled["carrots"])
            settled["carrots"] -= cost
            row.update(settled)
            ups[key] = True
            row["last_update"] = max(float(row.get("last_update") or 0.0), float(now))
            self.save(db)
            return dict(row)
