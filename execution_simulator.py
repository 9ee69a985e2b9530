"""
execution_simulator.py
=======================
Paper execution layer.

``Executor`` is the seam between decision making and order routing: the
orchestrator only ever calls ``execute(opportunity, config)`` and gets back a
``TradeResult``.  ``ExecutionSimulator`` is the paper-trading implementation;
a live router would subclass ``Executor`` and leave scanning, ranking and
risk checks untouched.

Preconditions, checked in order before anything is simulated:
  1. opportunity not expired                      -> OpportunityExpired
  2. validate_opportunity (risk score, min profit)-> ValidationFailed
  3. global risk limits                           -> RiskLimitExceeded

Simulated friction:
  swap           latency 0.1s, slippage ~ U[0.1%, 0.5%],
                 actual_profit = expected × (1 - 2 × slippage)
  add liquidity  latency 0.2s, fixed 0.1% slippage, profit 0 (yield accrues later)

Business outcomes are returned as unsuccessful TradeResults, never raised.
A fill that raises ``EngineError`` or ``OSError`` becomes ExecutionFailed;
anything else propagates.
"""

from __future__ import annotations

import random
import time
from datetime import datetime
from typing import Callable, Optional, Tuple

from config import EXECUTION, PAPER_TRADING, SLIPPAGE, get_logger
from models import (
    EXECUTION_FAILED, OPPORTUNITY_EXPIRED, RISK_LIMIT_EXCEEDED, VALIDATION_FAILED,
    YIELD_FARMING, EngineError, Opportunity, StrategyConfig, TradeResult, utc_now,
)
from risk_manager import RiskManager
from strategies import calculate_risk_score, validate_opportunity

logger = get_logger(__name__)


class Executor:
    """Turns an opportunity into a trade result."""

    def execute(self, opportunity: Opportunity, config: StrategyConfig) -> TradeResult:
        raise NotImplementedError


class ExecutionSimulator(Executor):

    def __init__(
        self,
        risk_manager: Optional[RiskManager] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        slippage_min: float = SLIPPAGE["min"],
        slippage_max: float = SLIPPAGE["max"],
        lp_slippage: float = SLIPPAGE["liquidity_provision"],
        swap_latency_s: float = EXECUTION["swap_latency_s"],
        lp_latency_s: float = EXECUTION["lp_latency_s"],
        swap_network_fee: float = EXECUTION["algo_network_fee"],
        lp_network_fee: float = EXECUTION["lp_network_fee"],
    ) -> None:
        if not PAPER_TRADING:
            raise RuntimeError("ExecutionSimulator only runs in paper trading mode")
        if not 0 <= slippage_min <= slippage_max:
            raise ValueError("slippage band must satisfy 0 <= min <= max")
        self.risk_manager = risk_manager
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        self.slippage_min = slippage_min
        self.slippage_max = slippage_max
        self.lp_slippage = lp_slippage
        self.swap_latency_s = swap_latency_s
        self.lp_latency_s = lp_latency_s
        self.swap_network_fee = swap_network_fee
        self.lp_network_fee = lp_network_fee

    def execute(self, opportunity: Opportunity, config: StrategyConfig) -> TradeResult:
        now = self._clock()

        if opportunity.is_expired(now):
            return self._reject(
                opportunity, OPPORTUNITY_EXPIRED,
                f"Opportunity expired at {opportunity.expires_at.isoformat()}", now,
            )

        if not validate_opportunity(opportunity, config):
            return self._reject(
                opportunity, VALIDATION_FAILED,
                f"Risk score {calculate_risk_score(opportunity, config):.2f}, "
                f"expected profit ${opportunity.expected_profit:.4f} "
                f"(min ${config.min_profit_threshold:.4f})",
                now,
            )

        if self.risk_manager is not None:
            reason = self.risk_manager.check(opportunity, config)
            if reason is not None:
                return self._reject(opportunity, RISK_LIMIT_EXCEEDED, reason, now)

        t0 = time.perf_counter()
        try:
            slippage, actual_profit, gas = self._fill(opportunity)
        except (EngineError, OSError) as exc:
            logger.error("Simulated execution failed for %s: %s", opportunity.pair_symbol, exc)
            return self._reject(opportunity, EXECUTION_FAILED, f"Execution failed: {exc}", now)

        result = TradeResult(
            success=True,
            executed_amount=opportunity.required_capital,
            actual_profit=actual_profit,
            slippage=slippage,
            execution_time_ms=int(round((time.perf_counter() - t0) * 1000)),
            transaction_ref=self._transaction_ref(),
            gas_cost=gas,
            strategy_name=opportunity.strategy_name,
            pair_symbol=opportunity.pair_symbol,
            opportunity_type=opportunity.opportunity_type,
            executed_at=self._clock(),
        )
        logger.info(
            "[PAPER] %s %s: $%.2f @ slippage %.3f%% -> profit $%.4f (%s)",
            opportunity.strategy_name, opportunity.pair_symbol, result.executed_amount,
            slippage * 100, actual_profit, result.transaction_ref,
        )
        return result

    def _fill(self, opportunity: Opportunity) -> Tuple[float, float, float]:
        """
        Simulate the fill. Returns (slippage, actual_profit, gas).

        Subclasses that route real orders override this; an ``EngineError`` or
        ``OSError`` raised here becomes an ExecutionFailed result.
        """
        if opportunity.opportunity_type == YIELD_FARMING:
            self._sleep(self.lp_latency_s)
            return self.lp_slippage, 0.0, self.lp_network_fee
        self._sleep(self.swap_latency_s)
        slippage = self._rng.uniform(self.slippage_min, self.slippage_max)
        return slippage, opportunity.expected_profit * (1 - slippage * 2), self.swap_network_fee

    def _transaction_ref(self) -> str:
        return "0x" + format(self._rng.getrandbits(64), "016x")

    @staticmethod
    def _reject(opportunity: Opportunity, reason: str, message: str, now: datetime) -> TradeResult:
        logger.info("Rejected %s %s: %s (%s)",
                    opportunity.strategy_name, opportunity.pair_symbol, reason, message)
        return TradeResult.rejected(opportunity, reason, message, executed_at=now)
