# errors.py: error taxonomy shared by the server and the sync client


class ClickerError(Exception):
    status = 500
    code = "internal"

    def __init__(self, message=None, **extra):
        super().__init__(message or self.code)
        self.extra = extra

    def to_json(self):
        body = {"ok": False, "err": self.code}
        body.update(self.extra)
        return body


class BadPayload(ClickerError):
    status = 400
    code = "bad_payload"


class AuthenticationRequired(ClickerError):
    status = 401
    code = "not_auth"


class AccountNotFound(ClickerError):
    status = 404
    code = "user_missing"


class WindowConflict(ClickerError):
    """The ledger moved under us: last_update no longer matches what was read."""
    status = 409
    code = "window_conflict"


class SuspiciousInput(ClickerError):
    status = 422
    code = "suspicious_input"


# ---------- client side ----------
class NetworkFailure(ClickerError):
    status = 503
    code = "network"


class SyncInProgress(ClickerError):
    status = 409
    code = "sync_in_flight"


class InsufficientFunds(ClickerError):
    status = 400
    code = "insufficient_funds"


class AlreadyOwned(ClickerError):
    status = 400
    code = "already_owned"


class BadUpgrade(ClickerError):
    status = 400
    code = "bad_upgrade"
