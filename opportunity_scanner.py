"""
opportunity_scanner.py
=======================
Cross-DEX spread detection over a point-in-time cache snapshot.

For each requested pair:
  1. Collect the cached records across sources (fewer than two: skip).
  2. Buy on the cheapest source, sell on the most expensive.
  3. spread = (sell - buy) / buy.  Continue only if spread > min_spread.
  4. trade_amount    = min(capital_fraction × allocated, liquidity_fraction × buy liquidity)
     expected_profit = trade_amount × spread - trade_amount × round_trip_fee
  5. Emit when expected_profit > min_profit_threshold, with
     confidence = min(cap, base + spread × weight) and a validity window of
     ``ttl_seconds`` from detection.

All thresholds and heuristics come from config.py and can be overridden per
scanner.  The confidence heuristic is uncalibrated.

When several sources quote the same best price, ``source_priority`` decides
which one takes the leg.

Ranking across pairs and strategies: expected_profit × confidence, descending,
stable so that equal scores keep detection order.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from tabulate import tabulate

from config import CONFIDENCE, SCANNER, get_logger
from models import ARBITRAGE, Opportunity, PriceRecord, utc_now

logger = get_logger(__name__)


def calculate_spread(buy_price: float, sell_price: float) -> float:
    """Relative spread as a decimal fraction of the buy price."""
    if buy_price <= 0:
        raise ValueError("buy_price must be positive")
    return (sell_price - buy_price) / buy_price


def rank_opportunities(opportunities: Iterable[Opportunity]) -> List[Opportunity]:
    """Stable sort by expected_profit × confidence_score, best first."""
    return sorted(opportunities, key=lambda op: op.rank_score, reverse=True)


class OpportunityScanner:

    def __init__(
        self,
        allocated_capital: float,
        min_spread: float = 0.005,
        min_profit_threshold: float = 0.001,
        strategy_name: str = "",
        capital_fraction: float = SCANNER["capital_fraction"],
        liquidity_fraction: float = SCANNER["liquidity_fraction"],
        round_trip_fee: float = SCANNER["round_trip_fee"],
        ttl_seconds: float = SCANNER["opportunity_ttl_seconds"],
        confidence_base: float = CONFIDENCE["base"],
        confidence_weight: float = CONFIDENCE["spread_weight"],
        confidence_cap: float = CONFIDENCE["cap"],
        source_priority: Optional[List[str]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.allocated_capital = allocated_capital
        self.min_spread = min_spread
        self.min_profit_threshold = min_profit_threshold
        self.strategy_name = strategy_name
        self.capital_fraction = capital_fraction
        self.liquidity_fraction = liquidity_fraction
        self.round_trip_fee = round_trip_fee
        self.ttl = timedelta(seconds=ttl_seconds)
        self.confidence_base = confidence_base
        self.confidence_weight = confidence_weight
        self.confidence_cap = confidence_cap
        self.source_priority = list(source_priority or [])
        self._clock = clock

    def _priority(self, source: str) -> int:
        try:
            return self.source_priority.index(source)
        except ValueError:
            return len(self.source_priority)

    def confidence(self, spread: float) -> float:
        return min(self.confidence_cap, self.confidence_base + spread * self.confidence_weight)

    def trade_amount(self, buy: PriceRecord) -> float:
        return min(
            self.allocated_capital * self.capital_fraction,
            buy.liquidity * self.liquidity_fraction,
        )

    def expected_profit(self, amount: float, spread: float) -> float:
        return amount * spread - amount * self.round_trip_fee

    def scan(
        self,
        pair_symbols: Iterable[str],
        snapshot: Dict[Tuple[str, str], PriceRecord],
        now: Optional[datetime] = None,
    ) -> List[Opportunity]:
        """
        Detect opportunities for ``pair_symbols`` in ``snapshot``.

        ``snapshot`` is the dict returned by ``PriceCache.get_fresh``; it is
        only read.  Returns the opportunities ranked best first.
        """
        now = now or self._clock()
        by_pair: Dict[str, List[PriceRecord]] = {}
        for record in snapshot.values():
            by_pair.setdefault(record.pair_symbol, []).append(record)

        found: List[Opportunity] = []
        for pair in pair_symbols:
            records = by_pair.get(pair, [])
            if len({r.source for r in records}) < 2:
                logger.debug("%s: %d source(s) with fresh data, skipping", pair, len(records))
                continue

            # Equal quotes resolve to the preferred DEX, then by name.
            buy = min(records, key=lambda r: (r.price, self._priority(r.source), r.source))
            sell = min(records, key=lambda r: (-r.price, self._priority(r.source), r.source))
            spread = calculate_spread(buy.price, sell.price)
            if spread <= self.min_spread:
                continue

            amount = self.trade_amount(buy)
            profit = self.expected_profit(amount, spread)
            if profit <= self.min_profit_threshold:
                logger.debug(
                    "%s: spread %.3f%% but profit $%.4f below threshold",
                    pair, spread * 100, profit,
                )
                continue

            found.append(Opportunity(
                pair_symbol=pair,
                buy_source=buy.source,
                sell_source=sell.source,
                buy_price=buy.price,
                sell_price=sell.price,
                spread_pct=spread,
                expected_profit=profit,
                confidence_score=self.confidence(spread),
                required_capital=amount,
                detected_at=now,
                expires_at=now + self.ttl,
                strategy_name=self.strategy_name,
                opportunity_type=ARBITRAGE,
                metadata={
                    "buy_fee": buy.fee,
                    "sell_fee": sell.fee,
                    "buy_liquidity": buy.liquidity,
                    "sell_liquidity": sell.liquidity,
                    "synthetic": buy.synthetic or sell.synthetic,
                },
            ))

        ranked = rank_opportunities(found)
        if ranked:
            logger.info(
                "%s: %d opportunities, best %s %.3f%%",
                self.strategy_name or "scanner", len(ranked),
                ranked[0].pair_symbol, ranked[0].spread_pct * 100,
            )
        return ranked


# ---------------------------------------------------------------------------
# DISPLAY
# ---------------------------------------------------------------------------


def print_opportunity_table(opportunities: List[Opportunity], top_n: int = 15) -> None:
    """Print a formatted table of ranked opportunities."""
    rows = []
    for i, op in enumerate(opportunities[:top_n], 1):
        rows.append([
            i,
            op.strategy_name[:16],
            op.pair_symbol,
            f"{op.buy_source[:8]}@{op.buy_price:.4f}",
            f"{op.sell_source[:8]}@{op.sell_price:.4f}",
            f"{op.spread_pct * 100:.3f}%",
            f"${op.required_capital:,.2f}",
            f"${op.expected_profit:.4f}",
            f"{op.confidence_score:.2f}",
        ])

    headers = ["#", "Strategy", "Pair", "Buy", "Sell", "Spread", "Size", "Exp. Profit", "Conf"]
    print("\n" + "-" * 100)
    print("  ALGORAND DEX OPPORTUNITIES (ranked by profit x confidence)")
    print("-" * 100)
    if rows:
        print(tabulate(rows, headers=headers, tablefmt="simple"))
    else:
        print("  No opportunities this cycle.")
    print("-" * 100 + "\n")
