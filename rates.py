# rates.py: accrual rates for every currency (single source of truth)
#
# Everything here is pure: callers pass the account's upgrade flags and get
# numbers back. Sync, preview and claim must all go through these helpers.

CURRENCIES = ("carrots", "horse_shoes", "golden_carrots")

# wire names used by the client JSON
WIRE_NAMES = {
    "carrots": "carrots",
    "horse_shoes": "horseShoes",
    "golden_carrots": "goldenCarrots",
}

# base per-second rates
BASE_IDLE = {"carrots": 0.5, "horse_shoes": 0.0, "golden_carrots": 0.0}
BASE_ACTIVE = {"carrots": 2.0, "horse_shoes": 0.0, "golden_carrots": 0.0}
UNLOCKED_IDLE = {"horse_shoes": 0.01, "golden_carrots": 0.001}
UNLOCKED_ACTIVE = {"horse_shoes": 0.05, "golden_carrots": 0.005}
BASE_CLICK_VALUE = 1.0

PRODUCTION_MULT = 2.0  # carrot_boost

OFFLINE_CAP_SECONDS = 24 * 3600
MIN_OFFLINE_SECONDS = 300
MAX_CLICK_RATE = 10.0      # clicks / second
EXTREME_FACTOR = 10        # overage > 10x bound
AD_BONUS_MULT = 2

# (upper bound in hours, efficiency); last bucket is open-ended
EFFICIENCY_TIERS = [
    (2.0, 1.0),
    (8.0, 0.7),
    (16.0, 0.5),
]
EFFICIENCY_FLOOR = 0.3

# server-side canonical upgrades (flag -> gate/multiplier + price in carrots)
UPGRADES = [
    {"key": "carrot_boost",         "name": "Carrot production x2",  "cost": 500},
    {"key": "horseshoe_unlock",     "name": "Unlock horseshoes",      "cost": 2_000},
    {"key": "golden_carrot_unlock", "name": "Unlock golden carrots",  "cost": 10_000},
]


def _has(flags, key):
    return bool((flags or {}).get(key))


def production_multiplier(flags):
    return PRODUCTION_MULT if _has(flags, "carrot_boost") else 1.0


def idle_rates(flags):
    rates = dict(BASE_IDLE)
    rates["carrots"] *= production_multiplier(flags)
    if _has(flags, "horseshoe_unlock"):
        rates["horse_shoes"] = UNLOCKED_IDLE["horse_shoes"]
    if _has(flags, "golden_carrot_unlock"):
        rates["golden_carrots"] = UNLOCKED_IDLE["golden_carrots"]
    return rates


def active_rates(flags):
    rates = dict(BASE_ACTIVE)
    rates["carrots"] *= production_multiplier(flags)
    if _has(flags, "horseshoe_unlock"):
        rates["horse_shoes"] = UNLOCKED_ACTIVE["horse_shoes"]
    if _has(flags, "golden_carrot_unlock"):
        rates["golden_carrots"] = UNLOCKED_ACTIVE["golden_carrots"]
    return rates


def click_value(flags):
    return BASE_CLICK_VALUE * production_multiplier(flags)


def offline_efficiency(elapsed_hours):
    """Step function: 100% up to 2h, 70% up to 8h, 50% up to 16h, then 30%."""
    for upper, eff in EFFICIENCY_TIERS:
        if elapsed_hours <= upper:
            return eff
    return EFFICIENCY_FLOOR


def rate_table(flags):
    per_sec = idle_rates(flags)
    return {
        "perSecond": {WIRE_NAMES[c]: per_sec[c] for c in CURRENCIES},
        "perHour": {WIRE_NAMES[c]: per_sec[c] * 3600 for c in CURRENCIES},
    }


def to_wire(amounts):
    return {WIRE_NAMES[c]: amounts.get(c, 0) for c in CURRENCIES}


def from_wire(data):
    """Wire dict -> internal names; missing keys stay missing."""
    out = {}
    for c in CURRENCIES:
        w = WIRE_NAMES[c]
        if w in (data or {}):
            out[c] = data[w]
    return out
