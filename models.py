"""
models.py
==========
Shared data types for the price-aggregation and strategy engine.

Price records, opportunities and trade results are immutable once created;
strategy configuration is owned by the orchestrator and only changed through
explicit updates.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union


ARBITRAGE = "arbitrage"
YIELD_FARMING = "yield_farming"
STRATEGY_TYPES = (ARBITRAGE, YIELD_FARMING)

# TradeResult.error_reason values
OPPORTUNITY_EXPIRED = "OpportunityExpired"
RISK_LIMIT_EXCEEDED = "RiskLimitExceeded"
VALIDATION_FAILED = "ValidationFailed"
EXECUTION_FAILED = "ExecutionFailed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# EXCEPTIONS
# ---------------------------------------------------------------------------


class EngineError(Exception):
    """Base class for engine errors."""


class SourceUnavailable(EngineError):
    """A single market data source call failed (network, timeout, parse, missing pair)."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class ConfigurationError(EngineError):
    """Malformed or missing strategy settings; the strategy must not be registered."""


# ---------------------------------------------------------------------------
# MARKET DATA
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceRecord:
    """Normalised price observation for one pair on one source."""

    pair_symbol: str      # e.g. "ALGO/USDC"
    source: str           # e.g. "tinyman"
    price: float
    volume_24h: float
    fee: float            # protocol fee / spread as decimal
    observed_at: datetime
    liquidity: float = 0.0
    synthetic: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source, self.pair_symbol)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (now - self.observed_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["observed_at"] = self.observed_at.isoformat()
        return d


@dataclass(frozen=True)
class PoolInfo:
    """Liquidity pool snapshot used by the yield farming strategy."""

    pool_id: str
    protocol: str
    asset_a: str
    asset_b: str
    apy: float            # percent
    tvl: float            # USD
    volume_24h: float
    risk_score: float     # 0 (safe) .. 1 (risky)
    synthetic: bool = False

    @property
    def pair_symbol(self) -> str:
        return f"{self.asset_a}/{self.asset_b}"

    @property
    def risk_adjusted_apy(self) -> float:
        return self.apy / (1.0 + self.risk_score)


@dataclass
class SourceHealth:
    """Per-source availability state kept by the fallback manager."""

    source: str
    active: bool = True
    last_success_at: Optional[datetime] = None
    error_count: int = 0
    unhealthy_since: Optional[datetime] = None


# ---------------------------------------------------------------------------
# OPPORTUNITIES / RESULTS
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Opportunity:
    """A candidate trade detected from one cache snapshot."""

    pair_symbol: str
    buy_source: str
    sell_source: str
    buy_price: float
    sell_price: float
    spread_pct: float          # decimal: (sell - buy) / buy
    expected_profit: float     # USD
    confidence_score: float
    required_capital: float    # USD
    detected_at: datetime
    expires_at: datetime
    strategy_name: str = ""
    opportunity_type: str = ARBITRAGE
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def rank_score(self) -> float:
        return self.expected_profit * self.confidence_score

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["detected_at"] = self.detected_at.isoformat()
        d["expires_at"] = self.expires_at.isoformat()
        return d


@dataclass(frozen=True)
class TradeResult:
    """Outcome of one execution attempt (successful or rejected)."""

    success: bool
    executed_amount: float = 0.0
    actual_profit: float = 0.0
    slippage: float = 0.0
    execution_time_ms: int = 0
    error_reason: Optional[str] = None
    error_message: Optional[str] = None
    transaction_ref: Optional[str] = None
    gas_cost: float = 0.0
    strategy_name: str = ""
    pair_symbol: str = ""
    opportunity_type: str = ARBITRAGE
    executed_at: datetime = field(default_factory=utc_now)
    trade_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def rejected(
        cls,
        opportunity: "Opportunity",
        reason: str,
        message: str,
        executed_at: Optional[datetime] = None,
    ) -> "TradeResult":
        return cls(
            success=False,
            error_reason=reason,
            error_message=message,
            strategy_name=opportunity.strategy_name,
            pair_symbol=opportunity.pair_symbol,
            opportunity_type=opportunity.opportunity_type,
            executed_at=executed_at or utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["executed_at"] = self.executed_at.isoformat()
        return d


# ---------------------------------------------------------------------------
# STRATEGY CONFIGURATION
# ---------------------------------------------------------------------------


@dataclass
class ArbitrageSettings:
    min_spread_pct: float = 0.5            # percent
    max_execution_time: int = 30000        # ms
    supported_pairs: List[str] = field(default_factory=list)
    dex_priorities: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class YieldFarmingSettings:
    target_apy: float = 15.0               # percent
    max_pools: int = 5
    rebalance_frequency_hours: float = 24
    min_pool_tvl: float = 100000.0
    max_pool_allocation_pct: float = 30.0  # percent
    supported_protocols: List[str] = field(default_factory=list)
    preferred_assets: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


StrategySettings = Union[ArbitrageSettings, YieldFarmingSettings]

SETTINGS_TYPES = {
    ARBITRAGE: ArbitrageSettings,
    YIELD_FARMING: YieldFarmingSettings,
}


def build_settings(strategy_type: str, values: Dict[str, Any]) -> StrategySettings:
    """
    Build the typed settings object for a strategy type.

    Known option names become attributes; anything else lands in ``extra``.
    """
    settings_cls = SETTINGS_TYPES.get(strategy_type)
    if settings_cls is None:
        raise ConfigurationError(f"Unknown strategy type: {strategy_type!r}")
    known = {f.name for f in fields(settings_cls)} - {"extra"}
    kwargs = {k: v for k, v in values.items() if k in known}
    extra = dict(values.get("extra") or {})
    extra.update({k: v for k, v in values.items() if k not in known and k != "extra"})
    try:
        return settings_cls(extra=extra, **kwargs)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid {strategy_type} settings: {exc}") from exc


@dataclass
class StrategyConfig:
    name: str
    strategy_type: str
    is_active: bool = False
    allocated_capital: float = 0.0
    max_position_size: float = 1000.0
    min_profit_threshold: float = 0.001
    stop_loss_pct: float = 0.05
    take_profit_pct: float = 0.10
    max_slippage_pct: float = 0.01
    settings: Union[StrategySettings, Dict[str, Any]] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["created_at"] = self.created_at.isoformat()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StrategyConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(d) - known
        if unknown:
            raise ConfigurationError(f"Unknown strategy config fields: {sorted(unknown)}")
        return cls(**d)


@dataclass
class RiskLimits:
    max_daily_loss: float
    max_position_size: float
    max_daily_trades: int

    @classmethod
    def for_capital(
        cls,
        total_capital: float,
        daily_loss_pct: float = 0.02,
        position_size_pct: float = 0.10,
        max_daily_trades: int = 50,
    ) -> "RiskLimits":
        return cls(
            max_daily_loss=total_capital * daily_loss_pct,
            max_position_size=total_capital * position_size_pct,
            max_daily_trades=max_daily_trades,
        )
