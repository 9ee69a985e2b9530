"""
risk_manager.py
================
Process-wide risk limits for one orchestrator's capital pool.

Checked before every execution, in order:
  1. daily trade count   < max_daily_trades
  2. today's realised P&L > -max_daily_loss
  3. required capital    <= max_position_size
  4. required capital    <= the owning strategy's allocated capital
  5. total allocation across active strategies <= total capital

Daily counters reset exactly once per calendar day (UTC).
"""

from __future__ import annotations

import threading
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Optional

from config import RISK, get_logger
from models import Opportunity, RiskLimits, StrategyConfig, TradeResult, utc_now

logger = get_logger(__name__)


class RiskManager:

    def __init__(
        self,
        total_capital: float,
        limits: Optional[RiskLimits] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.total_capital = total_capital
        self.limits = limits or RiskLimits.for_capital(
            total_capital,
            daily_loss_pct=RISK["max_daily_loss_pct"],
            position_size_pct=RISK["max_position_size_pct"],
            max_daily_trades=RISK["max_daily_trades"],
        )
        self._clock = clock
        self._lock = threading.Lock()

        self.allocated_capital = 0.0
        self.daily_trade_count = 0
        self.daily_pnl = 0.0
        self.previous_day_pnl = 0.0
        self.previous_day_trades = 0
        self.last_reset_date: date = clock().date()

    def set_allocation(self, allocated_capital: float) -> None:
        with self._lock:
            self.allocated_capital = allocated_capital

    def reset_daily_counters(
        self, history: Iterable[TradeResult] = (), today: Optional[date] = None
    ) -> bool:
        """
        Start a new trading day if the calendar date has advanced.

        Yesterday's P&L is recomputed from ``history`` (successful trades
        dated on the previous reset day).  Returns True if a reset happened.
        """
        today = today or self._clock().date()
        with self._lock:
            if today <= self.last_reset_date:
                return False
            closed_day = self.last_reset_date
            closed = [t for t in history if t.success and t.executed_at.date() == closed_day]
            self.previous_day_pnl = sum(t.actual_profit for t in closed)
            self.previous_day_trades = len(closed)
            self.daily_trade_count = 0
            self.daily_pnl = 0.0
            self.last_reset_date = today
        logger.info(
            "Daily reset for %s: %s closed with %d trades, P&L $%.4f",
            today, closed_day, self.previous_day_trades, self.previous_day_pnl,
        )
        return True

    def check(self, opportunity: Opportunity, config: StrategyConfig) -> Optional[str]:
        """Return None if the trade is allowed, else the reason it is not."""
        with self._lock:
            if self.daily_trade_count >= self.limits.max_daily_trades:
                reason = (f"Daily trade limit reached "
                          f"({self.daily_trade_count}/{self.limits.max_daily_trades})")
            elif self.daily_pnl <= -self.limits.max_daily_loss:
                reason = (f"Daily loss limit reached "
                          f"(${self.daily_pnl:.2f} <= -${self.limits.max_daily_loss:.2f})")
            elif opportunity.required_capital > self.limits.max_position_size:
                reason = (f"Position size ${opportunity.required_capital:.2f} exceeds "
                          f"limit ${self.limits.max_position_size:.2f}")
            elif opportunity.required_capital > config.allocated_capital:
                reason = (f"Position size ${opportunity.required_capital:.2f} exceeds "
                          f"{config.name} allocation ${config.allocated_capital:.2f}")
            elif self.allocated_capital > self.total_capital:
                reason = (f"Allocated capital ${self.allocated_capital:.2f} exceeds "
                          f"total ${self.total_capital:.2f}")
            else:
                return None
        logger.warning("Risk check failed for %s %s: %s",
                       opportunity.strategy_name, opportunity.pair_symbol, reason)
        return reason

    def record(self, result: TradeResult) -> None:
        """Count a trade against today's limits. Only successful trades count."""
        if not result.success:
            return
        with self._lock:
            self.daily_trade_count += 1
            self.daily_pnl += result.actual_profit

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_capital": self.total_capital,
                "allocated_capital": self.allocated_capital,
                "available_capital": self.total_capital - self.allocated_capital,
                "daily_trades": self.daily_trade_count,
                "max_daily_trades": self.limits.max_daily_trades,
                "daily_pnl": round(self.daily_pnl, 6),
                "max_daily_loss": self.limits.max_daily_loss,
                "max_position_size": self.limits.max_position_size,
                "previous_day_pnl": round(self.previous_day_pnl, 6),
                "last_reset_date": self.last_reset_date.isoformat(),
            }
