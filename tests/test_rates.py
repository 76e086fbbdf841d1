import pytest

from rates import (
    idle_rates, active_rates, click_value, offline_efficiency, rate_table,
    OFFLINE_CAP_SECONDS,
)


@pytest.mark.parametrize("hours,expected", [
    (1, 1.0), (2, 1.0), (3, 0.7), (8, 0.7), (9, 0.5), (16, 0.5), (17, 0.3),
])
def test_efficiency_tiers(hours, expected):
    assert offline_efficiency(hours) == expected


def test_efficiency_capped_at_24h():
    capped = min(30 * 3600, OFFLINE_CAP_SECONDS) / 3600
    assert capped == 24
    assert offline_efficiency(capped) == 0.3


def test_base_rates_without_upgrades():
    idle = idle_rates({})
    assert idle == {"carrots": 0.5, "horse_shoes": 0.0, "golden_carrots": 0.0}
    assert active_rates(None)["carrots"] == 2.0
    assert click_value({}) == 1.0


def test_carrot_boost_only_touches_carrots():
    flags = {"carrot_boost": True}
    assert idle_rates(flags)["carrots"] == 1.0
    assert idle_rates(flags)["horse_shoes"] == 0.0
    assert active_rates(flags)["carrots"] == 4.0
    assert click_value(flags) == 2.0


def test_unlocks_gate_secondary_currencies():
    flags = {"horseshoe_unlock": True, "golden_carrot_unlock": True}
    idle = idle_rates(flags)
    act = active_rates(flags)
    assert idle["horse_shoes"] > 0 and idle["golden_carrots"] > 0
    assert act["horse_shoes"] > idle["horse_shoes"]
    assert act["golden_carrots"] > idle["golden_carrots"]
    # unlocks are not multiplied by the carrot boost
    boosted = idle_rates(dict(flags, carrot_boost=True))
    assert boosted["horse_shoes"] == idle["horse_shoes"]


def test_rate_table_uses_wire_names():
    t = rate_table({})
    assert t["perSecond"]["carrots"] == 0.5
    assert t["perHour"]["carrots"] == 1800
    assert set(t["perSecond"]) == {"carrots", "horseShoes", "goldenCarrots"}
