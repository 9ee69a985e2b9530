import pytest

from fallback_manager import FallbackManager
from opportunity_scanner import OpportunityScanner
from models import SourceUnavailable
from price_cache import PriceCache
from price_feed import PriceFeed


@pytest.fixture
def make_feed(clock, no_sleep, rng):
    def _make(*sources):
        return PriceFeed(
            list(sources),
            PriceCache(clock=clock),
            fallback=FallbackManager(sleep=no_sleep, clock=clock, rng=rng),
            clock=clock,
        )
    return _make


def test_refresh_caches_every_source(make_feed, make_source):
    feed = make_feed(
        make_source("tinyman", {"ALGO/USDC": 0.1234}),
        make_source("pact", {"ALGO/USDC": 0.1267}),
    )
    assert feed.refresh(["ALGO/USDC"]) == 2
    snapshot = feed.snapshot()
    assert snapshot[("tinyman", "ALGO/USDC")].price == 0.1234
    assert snapshot[("pact", "ALGO/USDC")].price == 0.1267


def test_failing_source_is_replaced_by_synthetic_data(make_feed, make_source, no_sleep):
    broken = make_source("pact", error=SourceUnavailable("pact", "503"))
    feed = make_feed(make_source("tinyman", {"ALGO/USDC": 0.125}), broken)

    assert feed.refresh(["ALGO/USDC"]) == 2
    assert broken.calls == 3
    assert no_sleep.calls == [2, 4]
    synthetic = feed.snapshot()[("pact", "ALGO/USDC")]
    assert synthetic.synthetic is True
    assert feed.fallback.get_health("pact").active is False


def test_unexpected_source_error_does_not_abort_refresh(make_feed, make_source):
    feed = make_feed(
        make_source("tinyman", {"ALGO/USDC": 0.125}, error=RuntimeError("bug")),
        make_source("pact", {"ALGO/USDC": 0.1251}),
    )
    assert feed.refresh(["ALGO/USDC"]) == 1
    assert list(feed.snapshot()) == [("pact", "ALGO/USDC")]


def test_ingest_rejects_price_spikes_against_cache(make_feed, clock, make_record):
    feed = make_feed()
    assert feed.ingest([make_record(price=0.125)]) == 1
    clock.advance(60)
    assert feed.ingest([make_record(price=0.200)]) == 0
    assert feed.cache.get(("tinyman", "ALGO/USDC")).price == 0.125
    assert feed.ingest([make_record(price=0.130)]) == 1


def test_ingest_rejects_stale_records(make_feed, make_record):
    feed = make_feed()
    assert feed.ingest([make_record(age=400)]) == 0
    assert feed.ingest([]) == 0


def test_single_source_batches_checked_against_other_sources(make_feed, make_record):
    feed = make_feed()
    for source, price in [("tinyman", 0.1250), ("pact", 0.1251), ("folks", 0.1249)]:
        assert feed.ingest([make_record(source=source, price=price)]) == 1

    assert feed.ingest([make_record(source="vestige", price=1.25)]) == 0
    assert feed.cache.get(("vestige", "ALGO/USDC")) is None
    assert feed.ingest([make_record(source="vestige", price=0.1252)]) == 1


def test_tight_cluster_keeps_tradeable_spread(make_feed, make_record, clock):
    feed = make_feed()
    for source, price in [("tinyman", 0.1250), ("pact", 0.1251), ("folks", 0.1249), ("vestige", 0.1263)]:
        assert feed.ingest([make_record(source=source, price=price)]) == 1

    scanner = OpportunityScanner(allocated_capital=5000.0, clock=clock)
    [opp] = scanner.scan(["ALGO/USDC"], feed.snapshot())
    assert (opp.buy_source, opp.sell_source) == ("folks", "vestige")
    assert opp.spread_pct == pytest.approx(0.0112, abs=1e-4)


def test_polling_workers_start_and_stop(make_feed, make_source):
    tinyman = make_source("tinyman", {"ALGO/USDC": 0.125})
    pact = make_source("pact", {"ALGO/USDC": 0.1251})
    feed = make_feed(tinyman, pact)

    feed.start_polling(["ALGO/USDC"], interval=0.01)
    try:
        assert feed.polling
        assert tinyman.fetched.wait(2.0)
        assert pact.fetched.wait(2.0)
    finally:
        feed.stop_polling(timeout=2.0)

    assert not feed.polling
    assert len(feed.snapshot()) == 2
