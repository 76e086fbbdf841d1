# reconcile.py: server reconciliation engine + offline preview/claim
#
# The client reports what it earned during the active session; the server
# computes offline accrual itself, bounds the claim, and credits the ledger
# with one conditional additive update keyed on the last_update it read.
import math, time, logging

from errors import BadPayload, WindowConflict, SuspiciousInput
from rates import (
    CURRENCIES, MIN_OFFLINE_SECONDS, OFFLINE_CAP_SECONDS, MAX_CLICK_RATE,
    EXTREME_FACTOR, AD_BONUS_MULT,
    idle_rates, active_rates, click_value, offline_efficiency, rate_table,
    to_wire, from_wire,
)

logger = logging.getLogger(__name__)

EPSILON_SECONDS = 1e-3
DEFAULT_MAX_SESSION_SECONDS = 24 * 3600
MAX_ATTEMPTS = 3


def _floor(x):
    # guard against 5039.999999 style float noise
    return int(math.floor(x + 1e-9))


def _number(v, what):
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise BadPayload(field=what)
    if math.isnan(v) or math.isinf(v):
        raise BadPayload(field=what)
    return v


def _amounts(data, what):
    if data is None:
        return {c: 0 for c in CURRENCIES}
    if not isinstance(data, dict):
        raise BadPayload(field=what)
    vals = from_wire(data)
    return {c: _number(vals.get(c, 0), f"{what}.{c}") for c in CURRENCIES}


def parse_sync_request(data):
    """Validate the JSON body of POST /user/sync into internal names."""
    if not isinstance(data, dict):
        raise BadPayload()
    clicks = _number(data.get("clickCount", 0), "clickCount")
    duration = _number(data.get("sessionDuration", 0), "sessionDuration")
    if clicks < 0 or duration < 0:
        raise BadPayload(field="clickCount" if clicks < 0 else "sessionDuration")
    returning = data.get("isReturningPlayer", False)
    if not isinstance(returning, bool):
        raise BadPayload(field="isReturningPlayer")
    return {
        "claimed": _amounts(data.get("sessionData"), "sessionData"),
        "spent": _amounts(data.get("sessionSpent"), "sessionSpent"),
        "click_count": clicks,
        "session_seconds": duration,
        "returning": returning,
    }


def snapshot(row):
    out = to_wire({c: int(row.get(c) or 0) for c in CURRENCIES})
    out["lastUpdate"] = row.get("last_update")
    return out


def _time_away(seconds, capped):
    return {
        "seconds": int(seconds),
        "cappedSeconds": int(capped),
        "hours": int(seconds // 3600),
        "minutes": int((seconds % 3600) // 60),
    }


# ---------- offline accrual ----------
def offline_accrual(row, now):
    seconds = max(0.0, float(now) - float(row.get("last_update") or now))
    capped = min(seconds, OFFLINE_CAP_SECONDS)
    eff = offline_efficiency(capped / 3600.0)
    rates = idle_rates(row.get("upgrades"))
    return {
        "seconds": seconds,
        "capped": capped,
        "efficiency": eff,
        "earnings": {c: _floor(capped * rates[c] * eff) for c in CURRENCIES},
        "available": seconds >= MIN_OFFLINE_SECONDS,
    }


# ---------- active-session bound ----------
def active_bound(flags, session_seconds, click_count, max_session_seconds=DEFAULT_MAX_SESSION_SECONDS):
    session = min(float(session_seconds), float(max_session_seconds))
    rates = active_rates(flags)
    bound = {c: _floor(session * rates[c]) for c in CURRENCIES}

    click_rate = click_count / max(session, EPSILON_SECONDS)
    clicks_used = int(click_count)
    capped = click_rate > MAX_CLICK_RATE
    if capped:
        clicks_used = _floor(session * MAX_CLICK_RATE)
    bound["carrots"] += _floor(clicks_used * click_value(flags))
    return bound, {
        "sessionSecondsUsed": session,
        "clickRate": click_rate,
        "clickRateCapped": capped,
        "clickCountUsed": clicks_used,
    }


def validate_claims(claimed, bound):
    validated, overage = {}, {}
    for c in CURRENCIES:
        claim = claimed.get(c, 0)
        validated[c] = int(min(max(0, _floor(claim)), bound[c]))
        overage[c] = max(0, _floor(claim) - bound[c])
    suspicious = any(overage[c] > 0 for c in CURRENCIES)
    extreme = any(overage[c] > EXTREME_FACTOR * bound[c] for c in CURRENCIES)
    return validated, overage, suspicious, extreme


# ---------- POST /user/sync ----------
def reconcile(store, account_id, req, now=None,
              max_session_seconds=DEFAULT_MAX_SESSION_SECONDS, reject_extreme=False):
    last_err = None
    for attempt in range(MAX_ATTEMPTS):
        ts = time.time() if now is None else now
        row = store.require(account_id)
        flags = row.get("upgrades") or {}

        acc = offline_accrual(row, ts)
        if req["returning"] and acc["available"]:
            offline = acc["earnings"]
            efficiency = acc["efficiency"]
        else:
            offline = {c: 0 for c in CURRENCIES}
            efficiency = None

        bound, click_diag = active_bound(flags, req["session_seconds"], req["click_count"], max_session_seconds)
        validated, overage, suspicious, extreme = validate_claims(req["claimed"], bound)

        diagnostics = {
            "clamped": to_wire({c: overage[c] > 0 for c in CURRENCIES}),
            "overage": to_wire(overage),
            "maxActiveEarnings": to_wire(bound),
            "suspicious": suspicious,
            "extreme": extreme,
            "offlineEfficiency": efficiency,
            "offlineSeconds": acc["seconds"],
        }
        diagnostics.update(click_diag)

        if extreme:
            logger.error("extreme overage from %r: claimed=%s diagnostics=%s",
                         account_id, req["claimed"], diagnostics)
            if reject_extreme:
                raise SuspiciousInput(diagnostics=diagnostics)
        elif suspicious:
            logger.warning("clamped claim from %r: claimed=%s diagnostics=%s",
                           account_id, req["claimed"], diagnostics)

        credited = {c: offline[c] + validated[c] for c in CURRENCIES}
        spent = {c: _floor(max(0, req["spent"].get(c, 0))) for c in CURRENCIES}
        try:
            new_row, applied = store.apply_delta(
                account_id, credited, row.get("last_update"), ts,
                debits=spent, flagged=suspicious,
            )
        except WindowConflict as e:
            last_err = e
            logger.info("sync window moved for %r (attempt %d), recomputing", account_id, attempt + 1)
            continue

        logger.info("sync %r: credited=%s spent=%s offline_s=%.0f",
                    account_id, credited, applied, acc["seconds"])
        return {
            "offlineEarnings": to_wire(offline),
            "validatedActiveEarnings": to_wire(validated),
            "totalCredited": to_wire(credited),
            "spent": to_wire(applied),
            "newTotals": snapshot(new_row),
            "diagnostics": diagnostics,
        }
    raise last_err


# ---------- GET /user/offline-earnings ----------
def preview_offline(store, account_id, now=None):
    now = time.time() if now is None else now
    row = store.require(account_id)
    acc = offline_accrual(row, now)
    if not acc["available"]:
        return {
            "hasOfflineEarnings": False,
            "message": "No offline earnings available yet",
            "secondsAway": int(acc["seconds"]),
            "minimumSeconds": MIN_OFFLINE_SECONDS,
        }
    return {
        "hasOfflineEarnings": True,
        "earnings": to_wire(acc["earnings"]),
        "timeAway": _time_away(acc["seconds"], acc["capped"]),
        "capped": acc["seconds"] > OFFLINE_CAP_SECONDS,
        "efficiencyPercent": int(round(acc["efficiency"] * 100)),
        "rates": rate_table(row.get("upgrades")),
    }


# ---------- POST /user/claim-offline ----------
def claim_offline(store, account_id, watched_ad=False, now=None):
    mult = AD_BONUS_MULT if watched_ad else 1
    last_err = None
    for attempt in range(MAX_ATTEMPTS):
        ts = time.time() if now is None else now
        row = store.require(account_id)
        acc = offline_accrual(row, ts)
        if not acc["available"]:
            return {
                "claimed": False,
                "hasOfflineEarnings": False,
                "message": "Nothing to claim yet",
                "secondsAway": int(acc["seconds"]),
                "minimumSeconds": MIN_OFFLINE_SECONDS,
                "newTotals": snapshot(row),
            }

        base = acc["earnings"]
        total = {c: base[c] * mult for c in CURRENCIES}
        try:
            new_row, _ = store.apply_delta(account_id, total, row.get("last_update"), ts)
        except WindowConflict as e:
            last_err = e
            logger.info("claim window moved for %r (attempt %d), recomputing", account_id, attempt + 1)
            continue

        logger.info("offline claim %r: base=%s ad=%s away_s=%.0f", account_id, base, watched_ad, acc["seconds"])
        return {
            "claimed": True,
            "watchedAd": bool(watched_ad),
            "base": to_wire(base),
            "adBonus": to_wire({c: total[c] - base[c] for c in CURRENCIES}),
            "total": to_wire(total),
            "timeAway": _time_away(acc["seconds"], acc["capped"]),
            "efficiencyPercent": int(round(acc["efficiency"] * 100)),
            "newTotals": snapshot(new_row),
        }
    raise last_err


# ---------- POST /user/upgrade/<name> ----------
def buy_upgrade(store, account_id, key, cost, now=None):
    """
    Buy an upgrade flag. An offline window of at least MIN_OFFLINE_SECONDS is
    credited first at the old flags (no ad bonus); a shorter one is dropped.
    """
    last_err = None
    for attempt in range(MAX_ATTEMPTS):
        ts = time.time() if now is None else now
        row = store.require(account_id)
        acc = offline_accrual(row, ts)
        settled = acc["earnings"] if acc["available"] else {c: 0 for c in CURRENCIES}
        try:
            new_row = store.purchase_upgrade(account_id, key, cost, row.get("last_update"), ts, credits=settled)
        except WindowConflict as e:
            last_err = e
            logger.info("upgrade window moved for %r (attempt %d), recomputing", account_id, attempt + 1)
            continue

        logger.info("account %r bought %s for %d carrots, settled offline=%s", account_id, key, cost, settled)
        return {
            "upgrade": key,
            "cost": cost,
            "settledOffline": to_wire(settled),
            "newTotals": snapshot(new_row),
        }
    raise last_err
