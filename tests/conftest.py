import os
import random
import tempfile
import threading
from datetime import datetime, timedelta, timezone

# Must be set before config is imported anywhere: config creates DATA_DIR and
# points the log file handler into it.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="algofi-tests-"))

import pytest

from models import ARBITRAGE, Opportunity, PriceRecord, StrategyConfig


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds=0, **kwargs):
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def make_record(clock):
    def _make(source="tinyman", pair="ALGO/USDC", price=0.125, volume=50000.0,
              liquidity=200000.0, fee=0.003, age=0.0, synthetic=False):
        return PriceRecord(
            pair_symbol=pair,
            source=source,
            price=price,
            volume_24h=volume,
            fee=fee,
            observed_at=clock() - timedelta(seconds=age),
            liquidity=liquidity,
            synthetic=synthetic,
        )
    return _make


@pytest.fixture
def make_opportunity(clock):
    def _make(pair="ALGO/USDC", buy="tinyman", sell="pact", buy_price=0.1234,
              sell_price=0.1267, profit=5.0, confidence=0.9, capital=500.0,
              ttl=300, strategy="DEX Arbitrage", opportunity_type=ARBITRAGE, metadata=None):
        now = clock()
        return Opportunity(
            pair_symbol=pair,
            buy_source=buy,
            sell_source=sell,
            buy_price=buy_price,
            sell_price=sell_price,
            spread_pct=(sell_price - buy_price) / buy_price if buy_price else 0.0,
            expected_profit=profit,
            confidence_score=confidence,
            required_capital=capital,
            detected_at=now,
            expires_at=now + timedelta(seconds=ttl),
            strategy_name=strategy,
            opportunity_type=opportunity_type,
            metadata=metadata or {},
        )
    return _make


@pytest.fixture
def arb_config():
    return StrategyConfig(
        name="DEX Arbitrage",
        strategy_type=ARBITRAGE,
        is_active=True,
        allocated_capital=5000.0,
        max_position_size=1000.0,
        min_profit_threshold=0.001,
    )


@pytest.fixture
def tmp_store(tmp_path):
    from trade_store import TradeStore

    store = TradeStore(str(tmp_path / "test.db"))
    yield store
    store.close()


class StubSource:
    """Stands in for a DexSource: fixed prices, optional failure."""

    def __init__(self, name, prices, clock, error=None):
        self.name = name
        self.prices = prices
        self.clock = clock
        self.error = error
        self.calls = 0
        self.fetched = threading.Event()

    def fetch(self, pair_symbols):
        self.calls += 1
        self.fetched.set()
        if self.error is not None:
            raise self.error
        return [
            PriceRecord(pair_symbol=p, source=self.name, price=self.prices[p], volume_24h=50000.0,
                        fee=0.003, observed_at=self.clock(), liquidity=200000.0)
            for p in pair_symbols
        ]


@pytest.fixture
def make_source(clock):
    def _make(name, prices=None, error=None):
        return StubSource(name, prices or {}, clock, error=error)
    return _make
