import json

import pytest

from balance_cache import BalanceCache


@pytest.fixture
def cache(tmp_path):
    return BalanceCache(str(tmp_path / "cache.json"))


def test_starts_empty_and_clean(cache):
    assert cache.current_balances() == {"carrots": 0, "horse_shoes": 0, "golden_carrots": 0}
    assert cache.dirty is False
    assert cache.returning is True


def test_credit_marks_dirty_and_persists(cache):
    cache.credit("carrots", 25)
    assert cache.current_balances()["carrots"] == 25
    assert cache.dirty is True
    with open(cache.path, encoding="utf-8") as f:
        doc = json.load(f)
    assert doc["balances"]["carrots"] == 25
    assert doc["dirty"] is True


def test_debit_insufficient_funds_changes_nothing(cache):
    cache.credit("carrots", 10)
    assert cache.debit("carrots", 11) is False
    assert cache.current_balances()["carrots"] == 10
    assert cache.session_summary()["spent"]["carrots"] == 0
    assert cache.debit("carrots", 10) is True
    assert cache.current_balances()["carrots"] == 0


def test_rejects_bad_arguments(cache):
    with pytest.raises(ValueError):
        cache.credit("diamonds", 1)
    with pytest.raises(ValueError):
        cache.credit("carrots", -1)
    with pytest.raises(ValueError):
        cache.debit("carrots", 1.5)


def test_survives_restart(tmp_path):
    path = str(tmp_path / "cache.json")
    first = BalanceCache(path)
    first.credit("horse_shoes", 3)
    first.record_click(7)

    second = BalanceCache(path)
    assert second.current_balances()["horse_shoes"] == 3
    assert second.dirty is True
    assert second.session_summary()["clicks"] == 7
    assert second.returning is True


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text("{not json", encoding="utf-8")
    assert BalanceCache(str(path)).current_balances()["carrots"] == 0


def test_sync_request_body(cache):
    cache.credit("carrots", 40)
    cache.debit("carrots", 15)
    cache.record_click(12)
    cache.add_active_time(9.5)
    body, sent = cache.build_sync_request()
    assert body == {
        "sessionData": {"carrots": 40, "horseShoes": 0, "goldenCarrots": 0},
        "sessionSpent": {"carrots": 15, "horseShoes": 0, "goldenCarrots": 0},
        "clickCount": 12,
        "sessionDuration": 9.5,
        "isReturningPlayer": True,
    }
    assert sent["clicks"] == 12


def test_server_totals_overwrite_and_clear(cache):
    cache.credit("carrots", 50000)
    cache.add_active_time(10)
    _, sent = cache.build_sync_request()

    cache.apply_server_totals({"carrots": 6060, "horse_shoes": 0, "golden_carrots": 0}, sent=sent)

    assert cache.current_balances()["carrots"] == 6060
    assert cache.dirty is False
    assert cache.returning is False
    summary = cache.session_summary()
    assert summary["clicks"] == 0
    assert summary["active_seconds"] == 0
    assert summary["earned"]["carrots"] == 0


def test_changes_made_in_flight_stay_pending(cache):
    cache.credit("carrots", 20)
    _, sent = cache.build_sync_request()
    cache.credit("carrots", 5)  # lands while the request is out
    cache.record_click()

    cache.apply_server_totals({"carrots": 120}, sent=sent)

    assert cache.current_balances()["carrots"] == 125
    assert cache.dirty is True
    summary = cache.session_summary()
    assert summary["earned"]["carrots"] == 5
    assert summary["clicks"] == 1


def test_seed_keeps_accumulators(cache):
    cache.seed({"carrots": 300, "horse_shoes": 2, "golden_carrots": 1})
    assert cache.current_balances() == {"carrots": 300, "horse_shoes": 2, "golden_carrots": 1}
    assert cache.dirty is False
    assert cache.returning is True
