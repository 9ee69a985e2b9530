"""
price_validator.py
===================
Sanity and consensus checks applied to price records before they are cached.

Two stages:
  - ``validate``: per-record sanity (positive price, non-negative volume and
    liquidity, freshness, bounded change against the previous observation
    for the same source and pair).
  - ``validate_cross_source``: consensus across sources for one pair.  A
    record is an outlier when its distance from the mean of the *other*
    sources exceeds ``outlier_threshold`` standard deviations of those
    other sources and it sits at least ``min_outlier_deviation_pct`` percent
    away from their median.

Rejected records are dropped and logged; nothing here raises.
"""

from __future__ import annotations

import statistics
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from config import VALIDATOR, get_logger
from models import PriceRecord, utc_now

logger = get_logger(__name__)


class PriceValidator:

    def __init__(
        self,
        max_price_change_pct: float = VALIDATOR["max_price_change_pct"],
        min_volume: float = VALIDATOR["min_volume"],
        max_age_seconds: float = VALIDATOR["max_age_seconds"],
        outlier_threshold: float = VALIDATOR["outlier_threshold"],
        min_outlier_deviation_pct: float = VALIDATOR["min_outlier_deviation_pct"],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.max_price_change_pct = max_price_change_pct
        self.min_volume = min_volume
        self.max_age_seconds = max_age_seconds
        self.outlier_threshold = outlier_threshold
        self.min_outlier_deviation_pct = min_outlier_deviation_pct
        self._clock = clock

    # ── Per-record ───────────────────────────────────────────────────────────

    def validate(
        self,
        record: PriceRecord,
        previous: Optional[PriceRecord] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        if record.price <= 0 or record.volume_24h < 0 or record.liquidity < 0:
            logger.warning(
                "Invalid price data %s@%s: price=%s volume=%s liquidity=%s",
                record.pair_symbol, record.source, record.price,
                record.volume_24h, record.liquidity,
            )
            return False

        if record.volume_24h < self.min_volume:
            logger.debug(
                "Low volume %s@%s: %.0f < %.0f",
                record.pair_symbol, record.source, record.volume_24h, self.min_volume,
            )

        now = now or self._clock()
        age = record.age_seconds(now)
        if age > self.max_age_seconds:
            logger.warning(
                "Stale price data %s@%s: %.0fs old", record.pair_symbol, record.source, age
            )
            return False

        if previous is not None and previous.price > 0:
            elapsed = (record.observed_at - previous.observed_at).total_seconds()
            if elapsed > 0:
                minutes = max(elapsed / 60.0, 1.0)
                change_pct = abs(record.price - previous.price) / previous.price * 100
                allowed = self.max_price_change_pct * minutes
                if change_pct > allowed:
                    logger.warning(
                        "Suspicious price change %s@%s: %.2f%% > %.2f%% allowed",
                        record.pair_symbol, record.source, change_pct, allowed,
                    )
                    return False

        return True

    # ── Cross-source ─────────────────────────────────────────────────────────

    def validate_cross_source(
        self, pair_symbol: str, records: List[PriceRecord]
    ) -> List[PriceRecord]:
        """Return the records that agree with the other sources for ``pair_symbol``."""
        if len(records) < 3:
            # No majority with fewer than three sources.
            return list(records)

        prices = [r.price for r in records]
        if max(prices) == min(prices):
            return list(records)

        accepted: List[PriceRecord] = []
        for i, record in enumerate(records):
            others = prices[:i] + prices[i + 1:]
            mean = statistics.mean(others)
            stdev = statistics.stdev(others)
            median = statistics.median(others)
            if median > 0:
                deviation_pct = abs(record.price - median) / median * 100
            else:
                deviation_pct = float("inf")
            if stdev == 0:
                z = float("inf") if record.price != mean else 0.0
            else:
                z = abs(record.price - mean) / stdev
            if z > self.outlier_threshold and deviation_pct >= self.min_outlier_deviation_pct:
                logger.warning(
                    "Outlier price %s@%s: %.6f vs median %.6f (%.1f%% off, z=%.1f)",
                    pair_symbol, record.source, record.price, median, deviation_pct, z,
                )
                continue
            accepted.append(record)
        return accepted

    def validate_collection(
        self,
        records: Iterable[PriceRecord],
        previous: Optional[Dict] = None,
        now: Optional[datetime] = None,
        reference: Optional[Iterable[PriceRecord]] = None,
    ) -> List[PriceRecord]:
        """
        Group by pair, run cross-source consensus where two or more sources
        report, then per-record sanity on every survivor.

        ``previous`` maps ``(source, pair)`` keys to the last cached record.
        ``reference`` holds already accepted records from other sources; they
        vote in the consensus but are never returned.  Reference records with
        the same key as an incoming record are ignored.
        """
        previous = previous or {}
        by_pair: Dict[str, List[PriceRecord]] = defaultdict(list)
        for record in records:
            by_pair[record.pair_symbol].append(record)

        incoming_keys = {r.key for group in by_pair.values() for r in group}
        reference_by_pair: Dict[str, List[PriceRecord]] = defaultdict(list)
        for record in reference or ():
            if record.key not in incoming_keys:
                reference_by_pair[record.pair_symbol].append(record)

        valid: List[PriceRecord] = []
        for pair, group in by_pair.items():
            pool = group + reference_by_pair.get(pair, [])
            if len(pool) >= 2:
                agreed = {r.key for r in self.validate_cross_source(pair, pool)}
                candidates = [r for r in group if r.key in agreed]
            else:
                candidates = group
            for record in candidates:
                if self.validate(record, previous.get(record.key), now=now):
                    valid.append(record)
        dropped = sum(len(g) for g in by_pair.values()) - len(valid)
        if dropped:
            logger.debug("Validation dropped %d record(s)", dropped)
        return valid
