from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from config import BASE_PRICE_BANDS, BASE_PRICES, DEX_FEES
from fallback_manager import FallbackManager, generate_fallback_prices, time_of_day_multiplier
from models import PriceRecord, SourceUnavailable

PAIRS = ["ALGO/USDC", "ALGO/STBL", "USDC/STBL"]


@pytest.fixture
def manager(clock, no_sleep, rng):
    return FallbackManager(sleep=no_sleep, clock=clock, rng=rng)


def failing(source="tinyman"):
    return MagicMock(side_effect=SourceUnavailable(source, "boom"))


def test_success_marks_source_healthy(manager, make_record, clock):
    records = [make_record()]
    assert manager.call("tinyman", lambda: records, PAIRS) == records
    health = manager.get_health("tinyman")
    assert health.active is True
    assert health.error_count == 0
    assert health.last_success_at == clock()


def test_retries_with_exponential_backoff_then_succeeds(manager, make_record, no_sleep):
    records = [make_record()]
    fn = MagicMock(side_effect=[SourceUnavailable("tinyman", "x"),
                                requests.exceptions.Timeout("slow"),
                                records])
    assert manager.call("tinyman", fn, PAIRS) == records
    assert fn.call_count == 3
    assert no_sleep.calls == [2, 4]
    assert manager.get_health("tinyman").error_count == 0


def test_backoff_is_capped(clock, no_sleep):
    manager = FallbackManager(max_retries=6, backoff_cap_seconds=10, sleep=no_sleep, clock=clock)
    manager.call("pact", failing("pact"), PAIRS)
    assert no_sleep.calls == [2, 4, 8, 10, 10]


def test_exhaustion_returns_synthetic_records_and_marks_unhealthy(manager, clock):
    fn = failing()
    records = manager.call("tinyman", fn, PAIRS)

    assert fn.call_count == 3
    assert records, "fallback must never be empty for known pairs"
    assert all(isinstance(r, PriceRecord) for r in records)
    assert {r.pair_symbol for r in records} == set(PAIRS)
    assert all(r.synthetic and r.source == "tinyman" and r.price > 0 for r in records)
    assert all(r.fee == DEX_FEES["tinyman"] for r in records)

    health = manager.get_health("tinyman")
    assert health.active is False
    assert health.error_count == 3
    assert health.unhealthy_since == clock()
    assert manager.in_cooldown("tinyman")


def test_cooldown_short_circuits_without_calling_source(manager, clock, make_record):
    manager.call("tinyman", failing(), PAIRS)
    clock.advance(599)
    fn = MagicMock(return_value=[make_record()])
    records = manager.call("tinyman", fn, PAIRS)
    fn.assert_not_called()
    assert records and all(r.synthetic for r in records)


def test_source_retried_after_cooldown(manager, clock, make_record):
    manager.call("tinyman", failing(), PAIRS)
    clock.advance(601)
    assert not manager.in_cooldown("tinyman")
    live = [make_record()]
    fn = MagicMock(return_value=live)
    assert manager.call("tinyman", fn, PAIRS) == live
    fn.assert_called_once()
    assert manager.get_health("tinyman").active is True


def test_fallback_disabled_returns_empty(clock, no_sleep):
    manager = FallbackManager(fallback_enabled=False, sleep=no_sleep, clock=clock)
    assert manager.call("tinyman", failing(), PAIRS) == []
    assert manager.get_health("tinyman").active is False


def test_unexpected_errors_propagate(manager):
    with pytest.raises(ZeroDivisionError):
        manager.call("tinyman", MagicMock(side_effect=ZeroDivisionError), PAIRS)


def test_status_report(manager, make_record):
    manager.call("tinyman", lambda: [make_record()], PAIRS)
    manager.call("pact", failing("pact"), PAIRS)
    report = manager.get_status_report()
    assert report["total_sources"] == 2
    assert report["active_sources"] == 1
    assert report["inactive_sources"] == 1
    assert report["fallback_enabled"] is True
    assert report["source_details"]["pact"]["status"] == "offline"
    assert report["source_details"]["tinyman"]["error_count"] == 0


def test_invalid_retry_count():
    with pytest.raises(ValueError):
        FallbackManager(max_retries=0)


class TestGenerateFallbackPrices:
    def test_prices_stay_inside_band(self, rng):
        now = datetime(2025, 1, 15, 10, tzinfo=timezone.utc)
        for _ in range(50):
            for r in generate_fallback_prices("pact", PAIRS, now=now, rng=rng):
                base = BASE_PRICES[r.pair_symbol]
                assert abs(r.price - base) / base < 0.05
                assert r.volume_24h > 0 and r.liquidity > 0
                assert r.observed_at == now

    def test_band_is_relative_to_base_price(self, rng):
        for _ in range(50):
            for r in generate_fallback_prices("tinyman", PAIRS, rng=rng):
                base = BASE_PRICES[r.pair_symbol]
                band = BASE_PRICE_BANDS[r.pair_symbol]
                assert abs(r.price / base - 1) <= band / 2 + 0.0011

    def test_unknown_pairs_skipped(self, rng):
        records = generate_fallback_prices("pact", ["ALGO/USDC", "FOO/BAR"], rng=rng)
        assert [r.pair_symbol for r in records] == ["ALGO/USDC"]

    def test_peak_hour_volume_profile(self, rng):
        now = datetime(2025, 1, 15, 15, tzinfo=timezone.utc)
        for r in generate_fallback_prices("tinyman", PAIRS, now=now, rng=rng):
            assert 40000 * 2.0 * 1.5 <= r.volume_24h <= 80000 * 2.0 * 1.5

    def test_time_of_day_multiplier(self):
        assert time_of_day_multiplier(15) == 1.5
        assert time_of_day_multiplier(3) == 0.3
        assert time_of_day_multiplier(10) == 1.0
