"""
orchestrator.py
================
Owns one capital pool and drives the trading cycle:

  refresh prices -> reset daily counters -> scan every active strategy ->
  rank across strategies -> execute top N -> record and persist

Strategy registration is where configuration errors surface: a strategy whose
settings do not validate, or whose allocation would push active allocations
past total capital, is never registered.  Inside a cycle, an error in one
strategy is logged and that strategy is skipped; the others carry on.
"""

from __future__ import annotations

import statistics
import threading
import time
from collections import Counter
from dataclasses import asdict, fields, is_dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from config import CACHE, ORCHESTRATOR, TOTAL_CAPITAL, get_logger
from execution_simulator import ExecutionSimulator, Executor
from models import ConfigurationError, Opportunity, StrategyConfig, TradeResult, utc_now
from opportunity_scanner import rank_opportunities
from price_feed import PriceFeed
from risk_manager import RiskManager
from strategies import BaseStrategy, create_strategy
from trade_store import TradeStore

logger = get_logger(__name__)


class StrategyOrchestrator:

    def __init__(
        self,
        total_capital: float = TOTAL_CAPITAL,
        feed: Optional[PriceFeed] = None,
        executor: Optional[Executor] = None,
        risk_manager: Optional[RiskManager] = None,
        store: Optional[TradeStore] = None,
        clock: Callable[[], datetime] = utc_now,
        max_executions_per_cycle: int = ORCHESTRATOR["max_executions_per_cycle"],
        snapshot_max_age: float = CACHE["read_max_age_seconds"],
        strategy_factory: Callable[..., BaseStrategy] = create_strategy,
    ) -> None:
        self.total_capital = total_capital
        self.feed = feed
        self.risk_manager = risk_manager or RiskManager(total_capital, clock=clock)
        self.executor = executor or ExecutionSimulator(self.risk_manager, clock=clock)
        self.store = store
        self._clock = clock
        self.max_executions_per_cycle = max_executions_per_cycle
        self.snapshot_max_age = snapshot_max_age
        self._strategy_factory = strategy_factory

        self.strategies: Dict[str, BaseStrategy] = {}
        self.active_opportunities: List[Opportunity] = []
        self.execution_history: List[TradeResult] = []
        self.last_scan_at: Optional[datetime] = None
        self.cycle_count = 0

    # ── Strategy management ──────────────────────────────────────────────────

    def _event_sink(self, strategy_name: str, event_type: str, data: Dict[str, Any]) -> None:
        if self.store is not None:
            self.store.log_event(strategy_name, event_type, data)

    def _active_allocation(self, exclude: Optional[str] = None) -> float:
        return sum(
            s.config.allocated_capital for name, s in self.strategies.items()
            if s.is_active and name != exclude
        )

    def _check_allocation(self, config: StrategyConfig, exclude: Optional[str] = None) -> None:
        if not config.is_active:
            return
        total = self._active_allocation(exclude) + config.allocated_capital
        if total > self.total_capital:
            raise ConfigurationError(
                f"{config.name}: active allocations ${total:,.2f} would exceed "
                f"total capital ${self.total_capital:,.2f}"
            )

    def _sync_allocation(self) -> None:
        self.risk_manager.set_allocation(self._active_allocation())

    def register_strategy(self, config: Union[StrategyConfig, Dict[str, Any]]) -> BaseStrategy:
        """Validate, initialize and register a strategy. Raises ConfigurationError."""
        if isinstance(config, dict):
            config = StrategyConfig.from_dict(config)
        if config.name in self.strategies:
            raise ConfigurationError(f"Strategy {config.name!r} already registered")
        self._check_allocation(config)

        strategy = self._strategy_factory(config, clock=self._clock, event_sink=self._event_sink)
        self.strategies[config.name] = strategy
        self._sync_allocation()
        logger.info(
            "Strategy registered: %s (%s, $%.2f allocated, active=%s)",
            config.name, config.strategy_type, config.allocated_capital, config.is_active,
        )
        return strategy

    def unregister_strategy(self, name: str) -> bool:
        strategy = self.strategies.pop(name, None)
        if strategy is None:
            return False
        strategy.cleanup()
        self._sync_allocation()
        logger.info("Strategy unregistered: %s", name)
        return True

    def update_strategy(self, name: str, **changes: Any) -> BaseStrategy:
        """
        Change a registered strategy's configuration.

        ``settings`` changes are merged into the current settings.  On any
        ConfigurationError the previous configuration stays in force.
        """
        strategy = self.strategies.get(name)
        if strategy is None:
            raise KeyError(name)
        known = {f.name for f in fields(StrategyConfig)} - {"name", "strategy_type", "created_at"}
        unknown = set(changes) - known
        if unknown:
            raise ConfigurationError(f"Cannot update {sorted(unknown)} on {name}")

        previous = strategy.config
        if "settings" in changes:
            current = asdict(previous.settings) if is_dataclass(previous.settings) else dict(previous.settings)
            current.update(changes["settings"] or {})
            changes["settings"] = current
        candidate = replace(previous, **changes)
        self._check_allocation(candidate, exclude=name)

        strategy.config = candidate
        try:
            strategy.initialize()
        except ConfigurationError:
            strategy.config = previous
            raise
        self._sync_allocation()
        logger.info("Strategy updated: %s %s", name, sorted(changes))
        return strategy

    def pair_symbols(self) -> List[str]:
        """Union of the pairs watched by active strategies."""
        pairs = set()
        for strategy in self.strategies.values():
            if strategy.is_active:
                pairs.update(getattr(strategy, "pair_symbols", []))
        return sorted(pairs)

    # ── Cycle ────────────────────────────────────────────────────────────────

    def reset_daily_counters(self) -> bool:
        return self.risk_manager.reset_daily_counters(self.execution_history, self._clock().date())

    def scan_all(self, snapshot: Optional[Dict] = None, now: Optional[datetime] = None) -> List[Opportunity]:
        """Scan every active strategy and rank the merged opportunities."""
        self.reset_daily_counters()
        now = now or self._clock()
        if snapshot is None:
            snapshot = self.feed.snapshot(self.snapshot_max_age) if self.feed is not None else {}

        found: List[Opportunity] = []
        for name, strategy in self.strategies.items():
            if not strategy.is_active:
                continue
            try:
                found.extend(strategy.scan(snapshot, now=now))
            except Exception as exc:
                logger.error("Scan failed for strategy %s: %s", name, exc, exc_info=True)

        self.active_opportunities = rank_opportunities(found)
        self.last_scan_at = now
        logger.info(
            "Scanned %d opportunities from %d strategies",
            len(self.active_opportunities), len(self.strategies),
        )
        return list(self.active_opportunities)

    def execute_top(self, max_executions: Optional[int] = None) -> List[TradeResult]:
        """Execute up to ``max_executions`` of the ranked opportunities. Returns every attempt."""
        limit = self.max_executions_per_cycle if max_executions is None else max_executions
        attempts: List[TradeResult] = []
        executed = 0

        for opportunity in self.active_opportunities:
            if executed >= limit:
                break
            strategy = self.strategies.get(opportunity.strategy_name)
            if strategy is None or not strategy.is_active:
                continue
            if not strategy.should_execute(opportunity, now=self._clock()):
                logger.debug("%s declined %s", strategy.name, opportunity.pair_symbol)
                continue

            size = strategy.calculate_position_size(opportunity)
            if 0 < size < opportunity.required_capital:
                opportunity = replace(
                    opportunity,
                    required_capital=size,
                    expected_profit=opportunity.expected_profit * size / opportunity.required_capital,
                )

            result = self.executor.execute(opportunity, strategy.config)
            self._record(result)
            strategy.on_executed(opportunity, result)
            attempts.append(result)
            if result.success:
                executed += 1
        return attempts

    def _record(self, result: TradeResult) -> None:
        self.execution_history.append(result)
        self.risk_manager.record(result)
        if self.store is not None:
            self.store.save_trade(result)

    def run_cycle(self) -> Dict[str, Any]:
        """One full refresh -> scan -> execute -> persist cycle. Returns a summary dict."""
        t_start = time.perf_counter()
        self.cycle_count += 1

        cached = 0
        pairs = self.pair_symbols()
        if self.feed is not None and pairs:
            try:
                cached = self.feed.refresh(pairs)
            except Exception as exc:
                logger.error("Price refresh failed: %s", exc, exc_info=True)

        opportunities = self.scan_all()
        if self.store is not None:
            self.store.save_opportunities(opportunities)
        results = self.execute_top()

        successes = [r for r in results if r.success]
        rejected = Counter(r.error_reason for r in results if not r.success)
        top = opportunities[0] if opportunities else None
        summary = {
            "cycle": self.cycle_count,
            "timestamp": self._clock().isoformat(),
            "pairs": pairs,
            "records_cached": cached,
            "opportunities": len(opportunities),
            "attempted": len(results),
            "executed": len(successes),
            "rejected": dict(rejected),
            "cycle_profit": round(sum(r.actual_profit for r in successes), 6),
            "top_pair": top.pair_symbol if top else "N/A",
            "top_strategy": top.strategy_name if top else "N/A",
            "top_spread_pct": round(top.spread_pct * 100, 4) if top else 0.0,
            "top_expected_profit": round(top.expected_profit, 6) if top else 0.0,
            "daily_trades": self.risk_manager.daily_trade_count,
            "daily_pnl": round(self.risk_manager.daily_pnl, 6),
            "elapsed_ms": round((time.perf_counter() - t_start) * 1000, 1),
        }
        logger.info(
            "Cycle %d: %d opportunities, %d/%d executed, profit $%.4f (%.0fms)",
            self.cycle_count, len(opportunities), len(successes), len(results),
            summary["cycle_profit"], summary["elapsed_ms"],
        )
        return summary

    def run_forever(
        self,
        interval: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
        max_cycles: Optional[int] = None,
    ) -> None:
        interval = float(interval if interval is not None else ORCHESTRATOR["scan_interval_seconds"])
        stop_event = stop_event or threading.Event()
        cycles = 0
        while not stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as exc:
                logger.error("Cycle failed: %s", exc, exc_info=True)
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            stop_event.wait(interval)

    # ── Reporting ────────────────────────────────────────────────────────────

    def get_execution_history(
        self, strategy_name: Optional[str] = None, limit: Optional[int] = None
    ) -> List[TradeResult]:
        history = [
            r for r in self.execution_history
            if strategy_name is None or r.strategy_name == strategy_name
        ]
        return history[-limit:] if limit else history

    def get_strategy_performance(self, name: str, days: int = ORCHESTRATOR["performance_window_days"]) -> Dict[str, Any]:
        cutoff = self._clock() - timedelta(days=days)
        trades = [r for r in self.get_execution_history(name) if r.executed_at >= cutoff]
        successful = [r for r in trades if r.success]
        total_profit = sum(r.actual_profit for r in successful)
        return {
            "strategy": name,
            "period_days": days,
            "total_trades": len(trades),
            "successful_trades": len(successful),
            "success_rate": len(successful) / len(trades) if trades else 0.0,
            "total_profit": round(total_profit, 6),
            "total_volume": round(sum(r.executed_amount for r in successful), 2),
            "total_gas": round(sum(r.gas_cost for r in successful), 6),
            "avg_execution_time_ms": statistics.mean(r.execution_time_ms for r in successful) if successful else 0.0,
            "profit_per_trade": total_profit / len(successful) if successful else 0.0,
            "rejections": dict(Counter(r.error_reason for r in trades if not r.success)),
        }

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        recent = [r for r in self.execution_history if r.success and r.executed_at >= now - timedelta(hours=24)]
        status = {
            "timestamp": now.isoformat(),
            "total_strategies": len(self.strategies),
            "active_strategies": sum(1 for s in self.strategies.values() if s.is_active),
            "strategies": [s.status() for s in self.strategies.values()],
            "active_opportunities": len(self.active_opportunities),
            "recent_24h_trades": len(recent),
            "recent_24h_profit": round(sum(r.actual_profit for r in recent), 6),
            "last_scan": self.last_scan_at.isoformat() if self.last_scan_at else None,
            "cycles": self.cycle_count,
            "risk": self.risk_manager.status(),
        }
        if self.feed is not None:
            status["sources"] = self.feed.fallback.get_status_report()
            status["cache"] = self.feed.cache.stats()
        return status
