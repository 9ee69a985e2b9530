"""
strategies.py
==============
Trading strategies run by the orchestrator.

  ArbitrageStrategy      -- cross-DEX spread capture on the cached prices
  YieldFarmingStrategy   -- periodic liquidity provision into the best
                            risk-adjusted pools

Each strategy merges its documented defaults (config.STRATEGY_DEFAULTS) with
the caller's overrides in ``initialize()`` and validates the result; a bad
setting raises ConfigurationError and the strategy must not be registered.

Shared risk helpers:
  calculate_risk_score   0.3 if confidence < 0.7
                       + 0.4 if required capital > max position size
                       + 0.2 if expected profit < minimum
  validate_opportunity   risk score < 0.5 and expected profit > minimum
"""

from __future__ import annotations

import copy
import random
import uuid
from dataclasses import asdict, is_dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import RISK, SCANNER, STRATEGY_DEFAULTS, get_logger
from dex_sources import fetch_pools
from models import (
    ARBITRAGE, YIELD_FARMING, ArbitrageSettings, ConfigurationError, Opportunity,
    PoolInfo, PriceRecord, SourceUnavailable, StrategyConfig, TradeResult,
    YieldFarmingSettings, build_settings, utc_now,
)
from opportunity_scanner import OpportunityScanner

logger = get_logger(__name__)

EventSink = Callable[[str, str, Dict[str, Any]], None]


# ---------------------------------------------------------------------------
# RISK HELPERS
# ---------------------------------------------------------------------------


def calculate_risk_score(opportunity: Opportunity, config: StrategyConfig) -> float:
    score = 0.0
    if opportunity.confidence_score < RISK["min_confidence"]:
        score += 0.3
    if opportunity.required_capital > config.max_position_size:
        score += 0.4
    if opportunity.expected_profit < config.min_profit_threshold:
        score += 0.2
    return round(score, 4)


def validate_opportunity(opportunity: Opportunity, config: StrategyConfig) -> bool:
    return (
        calculate_risk_score(opportunity, config) < RISK["max_risk_score"]
        and opportunity.expected_profit > config.min_profit_threshold
    )


# ---------------------------------------------------------------------------
# BASE
# ---------------------------------------------------------------------------


class BaseStrategy:
    """Common lifecycle for all strategies."""

    strategy_type: str = ""

    def __init__(
        self,
        config: StrategyConfig,
        clock: Callable[[], datetime] = utc_now,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        if config.strategy_type != self.strategy_type:
            raise ConfigurationError(
                f"{type(self).__name__} cannot run a {config.strategy_type!r} config"
            )
        self.config = config
        self._clock = clock
        self._event_sink = event_sink
        self.initialized = False
        self.executions = 0
        self.realized_profit = 0.0

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_active(self) -> bool:
        return self.config.is_active

    @property
    def settings(self):
        return self.config.settings

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Merge defaults with overrides, validate, and prepare internal state."""
        if not self.config.name:
            raise ConfigurationError("Strategy name is required")
        if self.config.allocated_capital < 0:
            raise ConfigurationError(f"{self.name}: allocated_capital must be >= 0")
        if self.config.max_position_size <= 0:
            raise ConfigurationError(f"{self.name}: max_position_size must be > 0")

        overrides = self.config.settings
        if is_dataclass(overrides):
            overrides = asdict(overrides)
        if not isinstance(overrides, dict):
            raise ConfigurationError(f"{self.name}: settings must be a mapping")

        merged = copy.deepcopy(STRATEGY_DEFAULTS[self.strategy_type])
        merged.update(overrides)
        self.config.settings = build_settings(self.strategy_type, merged)
        self._validate_settings()
        self._setup()
        self.initialized = True
        self.log_event("initialized", {"type": self.strategy_type})

    def _validate_settings(self) -> None:
        pass

    def _setup(self) -> None:
        pass

    def scan(self, snapshot: Dict[Tuple[str, str], PriceRecord], now: Optional[datetime] = None) -> List[Opportunity]:
        raise NotImplementedError

    def should_execute(self, opportunity: Opportunity, now: Optional[datetime] = None) -> bool:
        raise NotImplementedError

    def calculate_position_size(self, opportunity: Opportunity) -> float:
        return min(self.config.max_position_size, opportunity.required_capital)

    def on_executed(self, opportunity: Opportunity, result: TradeResult) -> None:
        if result.success:
            self.executions += 1
            self.realized_profit += result.actual_profit

    def cleanup(self) -> None:
        self.log_event("cleanup", {})

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.strategy_type,
            "active": self.is_active,
            "allocated_capital": self.config.allocated_capital,
            "executions": self.executions,
            "realized_profit": round(self.realized_profit, 6),
        }

    def log_event(self, event_type: str, data: Dict[str, Any]) -> None:
        logger.info("Strategy event %s/%s: %s", self.name, event_type, data)
        if self._event_sink is not None:
            self._event_sink(self.name, event_type, data)


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# ARBITRAGE
# ---------------------------------------------------------------------------


class ArbitrageStrategy(BaseStrategy):

    strategy_type = ARBITRAGE

    def __init__(self, config: StrategyConfig, clock: Callable[[], datetime] = utc_now,
                 event_sink: Optional[EventSink] = None, **scanner_kwargs: Any) -> None:
        super().__init__(config, clock=clock, event_sink=event_sink)
        self._scanner_kwargs = scanner_kwargs
        self.scanner: Optional[OpportunityScanner] = None

    @property
    def pair_symbols(self) -> List[str]:
        if isinstance(self.settings, ArbitrageSettings):
            return list(self.settings.supported_pairs)
        return list(STRATEGY_DEFAULTS[ARBITRAGE]["supported_pairs"])

    def _validate_settings(self) -> None:
        s: ArbitrageSettings = self.settings
        _require(_is_number(s.min_spread_pct) and s.min_spread_pct >= 0,
                 f"{self.name}: min_spread_pct must be a non-negative number")
        _require(_is_number(s.max_execution_time) and s.max_execution_time > 0,
                 f"{self.name}: max_execution_time must be positive")
        _require(isinstance(s.supported_pairs, list) and len(s.supported_pairs) > 0,
                 f"{self.name}: supported_pairs must be a non-empty list")
        for pair in s.supported_pairs:
            _require(isinstance(pair, str) and pair.count("/") == 1 and "" not in pair.split("/"),
                     f"{self.name}: invalid pair {pair!r}")
        _require(isinstance(s.dex_priorities, list) and all(isinstance(d, str) for d in s.dex_priorities),
                 f"{self.name}: dex_priorities must be a list of names")

    def _setup(self) -> None:
        s: ArbitrageSettings = self.settings
        self.scanner = OpportunityScanner(
            allocated_capital=self.config.allocated_capital,
            min_spread=s.min_spread_pct / 100,
            min_profit_threshold=self.config.min_profit_threshold,
            strategy_name=self.name,
            source_priority=s.dex_priorities,
            clock=self._clock,
            **self._scanner_kwargs,
        )

    def scan(self, snapshot: Dict[Tuple[str, str], PriceRecord], now: Optional[datetime] = None) -> List[Opportunity]:
        if self.scanner is None:
            raise ConfigurationError(f"{self.name}: strategy not initialized")
        self.scanner.allocated_capital = self.config.allocated_capital
        self.scanner.min_profit_threshold = self.config.min_profit_threshold
        return self.scanner.scan(self.pair_symbols, snapshot, now=now)

    def should_execute(self, opportunity: Opportunity, now: Optional[datetime] = None) -> bool:
        if not self.is_active:
            return False
        if opportunity.expected_profit < self.config.min_profit_threshold:
            return False
        if opportunity.confidence_score < RISK["min_confidence"]:
            return False
        return opportunity.spread_pct * 100 >= self.settings.min_spread_pct

    def on_executed(self, opportunity: Opportunity, result: TradeResult) -> None:
        super().on_executed(opportunity, result)
        if result.success:
            self.log_event("trade_executed", {
                "pair": opportunity.pair_symbol,
                "profit": result.actual_profit,
                "amount": result.executed_amount,
                "buy_dex": opportunity.buy_source,
                "sell_dex": opportunity.sell_source,
                "transaction_ref": result.transaction_ref,
            })


# ---------------------------------------------------------------------------
# YIELD FARMING
# ---------------------------------------------------------------------------


def sample_pools(protocol: str, rng: Optional[random.Random] = None) -> List[PoolInfo]:
    """Representative pools used when a protocol's pool API is unavailable."""
    rng = rng or random.Random()
    shapes = [
        # (suffix, a, b, apy range, tvl range + step, volume range, risk range)
        ("algo_usdc", "ALGO", "USDC", (5.0, 25.0), (100000, 2000000, 10000), (50000, 500000), (0.1, 0.8)),
        ("algo_stbl", "ALGO", "STBL", (8.0, 22.0), (80000, 1500000, 5000), (30000, 300000), (0.2, 0.7)),
        ("usdc_stbl", "USDC", "STBL", (3.0, 12.0), (200000, 3000000, 15000), (100000, 800000), (0.05, 0.3)),
    ]
    pools = []
    for suffix, a, b, apy, tvl, volume, risk in shapes:
        pools.append(PoolInfo(
            pool_id=f"{protocol}_{suffix}",
            protocol=protocol,
            asset_a=a,
            asset_b=b,
            apy=round(rng.uniform(*apy), 1),
            tvl=float(rng.randrange(tvl[0], tvl[1] + 1, tvl[2])),
            volume_24h=float(rng.randint(*volume)),
            risk_score=round(rng.uniform(*risk), 2),
            synthetic=True,
        ))
    return pools


class YieldFarmingStrategy(BaseStrategy):

    strategy_type = YIELD_FARMING

    def __init__(
        self,
        config: StrategyConfig,
        clock: Callable[[], datetime] = utc_now,
        event_sink: Optional[EventSink] = None,
        pool_fetcher: Callable[[str], List[PoolInfo]] = fetch_pools,
        rng: Optional[random.Random] = None,
        ttl_seconds: float = SCANNER["opportunity_ttl_seconds"],
    ) -> None:
        super().__init__(config, clock=clock, event_sink=event_sink)
        self._pool_fetcher = pool_fetcher
        self._rng = rng or random.Random()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.pool_data: Dict[str, PoolInfo] = {}
        self.position_tracker: Dict[str, float] = {}
        self.last_rebalance: Optional[datetime] = None
        self._active_batch: Optional[str] = None

    def _validate_settings(self) -> None:
        s: YieldFarmingSettings = self.settings
        _require(_is_number(s.target_apy) and s.target_apy >= 0,
                 f"{self.name}: target_apy must be a non-negative number")
        _require(isinstance(s.max_pools, int) and not isinstance(s.max_pools, bool) and s.max_pools >= 1,
                 f"{self.name}: max_pools must be an integer >= 1")
        _require(_is_number(s.rebalance_frequency_hours) and s.rebalance_frequency_hours > 0,
                 f"{self.name}: rebalance_frequency_hours must be positive")
        _require(_is_number(s.min_pool_tvl) and s.min_pool_tvl >= 0,
                 f"{self.name}: min_pool_tvl must be a non-negative number")
        _require(_is_number(s.max_pool_allocation_pct) and 0 < s.max_pool_allocation_pct <= 100,
                 f"{self.name}: max_pool_allocation_pct must be in (0, 100]")
        _require(isinstance(s.supported_protocols, list) and len(s.supported_protocols) > 0,
                 f"{self.name}: supported_protocols must be a non-empty list")

    def _setup(self) -> None:
        # Backdate so the first scan rebalances immediately.  Re-initialising
        # after a settings update keeps the existing schedule.
        if self.last_rebalance is None:
            hours = self.settings.rebalance_frequency_hours + 1
            self.last_rebalance = self._clock() - timedelta(hours=hours)

    # ── Pools ────────────────────────────────────────────────────────────────

    def fetch_pool_data(self) -> Dict[str, PoolInfo]:
        for protocol in self.settings.supported_protocols:
            try:
                pools = self._pool_fetcher(protocol)
            except SourceUnavailable as exc:
                logger.warning("%s: pool data unavailable for %s (%s); using sample pools",
                               self.name, protocol, exc.reason)
                pools = sample_pools(protocol, self._rng)
            for pool in pools:
                self.pool_data[pool.pool_id] = pool
        return dict(self.pool_data)

    def eligible_pools(self) -> List[PoolInfo]:
        s: YieldFarmingSettings = self.settings
        preferred = {a.upper() for a in s.preferred_assets}
        eligible = [
            p for p in self.pool_data.values()
            if p.apy >= s.target_apy and p.tvl >= s.min_pool_tvl
            and (not preferred or (p.asset_a in preferred and p.asset_b in preferred))
        ]
        eligible.sort(key=lambda p: p.pool_id)
        eligible.sort(key=lambda p: p.risk_adjusted_apy, reverse=True)
        return eligible

    def rebalance_due(self, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        if self.last_rebalance is None:
            return True
        hours = (now - self.last_rebalance).total_seconds() / 3600
        return hours >= self.settings.rebalance_frequency_hours

    # ── Strategy interface ───────────────────────────────────────────────────

    def scan(self, snapshot: Dict[Tuple[str, str], PriceRecord], now: Optional[datetime] = None) -> List[Opportunity]:
        now = now or self._clock()
        if not self.initialized:
            raise ConfigurationError(f"{self.name}: strategy not initialized")
        if not self.rebalance_due(now):
            return []

        self.fetch_pool_data()
        top = self.eligible_pools()[: self.settings.max_pools]
        if not top:
            logger.debug("%s: no eligible pools", self.name)
            return []

        batch = uuid.uuid4().hex[:12]
        allocation = self.config.allocated_capital / len(top)
        opportunities = []
        for pool in top:
            daily_return = allocation * (pool.apy / 365 / 100)
            opportunities.append(Opportunity(
                pair_symbol=pool.pair_symbol,
                buy_source=pool.protocol,
                sell_source=pool.protocol,
                buy_price=0.0,
                sell_price=0.0,
                spread_pct=0.0,
                expected_profit=daily_return,
                confidence_score=round(1.0 - pool.risk_score, 4),
                required_capital=allocation,
                detected_at=now,
                expires_at=now + self.ttl,
                strategy_name=self.name,
                opportunity_type=YIELD_FARMING,
                metadata={
                    "pool_id": pool.pool_id,
                    "protocol": pool.protocol,
                    "apy": pool.apy,
                    "tvl": pool.tvl,
                    "risk_score": pool.risk_score,
                    "action": "add_liquidity",
                    "batch": batch,
                    "synthetic": pool.synthetic,
                },
            ))
        logger.info("%s: %d rebalance opportunities", self.name, len(opportunities))
        return opportunities

    def should_execute(self, opportunity: Opportunity, now: Optional[datetime] = None) -> bool:
        if not self.is_active:
            return False
        meta = opportunity.metadata
        batch = meta.get("batch")
        in_current_batch = batch is not None and batch == self._active_batch
        if not (in_current_batch or self.rebalance_due(now)):
            return False
        if meta.get("apy", 0.0) < self.settings.target_apy:
            return False
        if meta.get("risk_score", 1.0) > RISK["max_pool_risk_score"]:
            return False
        return meta.get("tvl", 0.0) >= self.settings.min_pool_tvl

    def calculate_position_size(self, opportunity: Opportunity) -> float:
        cap = self.config.max_position_size * self.settings.max_pool_allocation_pct / 100
        return min(cap, opportunity.required_capital)

    def on_executed(self, opportunity: Opportunity, result: TradeResult) -> None:
        super().on_executed(opportunity, result)
        if not result.success:
            return
        pool_id = opportunity.metadata.get("pool_id", opportunity.pair_symbol)
        self.position_tracker[pool_id] = self.position_tracker.get(pool_id, 0.0) + result.executed_amount
        if opportunity.metadata.get("action") == "add_liquidity":
            self.last_rebalance = result.executed_at
            self._active_batch = opportunity.metadata.get("batch")
        self.log_event("liquidity_provided", {
            "pool_id": pool_id,
            "protocol": opportunity.metadata.get("protocol"),
            "amount": result.executed_amount,
            "action": opportunity.metadata.get("action"),
            "transaction_ref": result.transaction_ref,
        })

    def cleanup(self) -> None:
        self.pool_data.clear()
        self.position_tracker.clear()
        self.log_event("cleanup", {"positions_cleared": True})

    def status(self) -> Dict[str, Any]:
        d = super().status()
        d.update({
            "pools_tracked": len(self.pool_data),
            "positions": dict(self.position_tracker),
            "last_rebalance": self.last_rebalance.isoformat() if self.last_rebalance else None,
        })
        return d


# ---------------------------------------------------------------------------
# FACTORY
# ---------------------------------------------------------------------------

STRATEGY_CLASSES = {
    ARBITRAGE: ArbitrageStrategy,
    YIELD_FARMING: YieldFarmingStrategy,
}


def create_strategy(config: StrategyConfig, **kwargs: Any) -> BaseStrategy:
    """Build and initialize the strategy for ``config.strategy_type``."""
    cls = STRATEGY_CLASSES.get(config.strategy_type)
    if cls is None:
        raise ConfigurationError(f"Unknown strategy type: {config.strategy_type!r}")
    strategy = cls(config, **kwargs)
    strategy.initialize()
    return strategy
