"""
price_cache.py
===============
Bounded, thread-safe store of the latest validated price per (source, pair).

Writers are the price feed and its polling workers; the scanner reads
point-in-time snapshots.  Readers never get a live handle into the
internal dict.

Capacity management: once occupancy exceeds ``cleanup_threshold`` of
``max_size`` every insert runs ``cleanup``, which first purges entries older
than ``purge_age_seconds`` and then evicts the oldest remaining entries
until the cache is at or under ``max_size``.  Age ordering is kept in a heap
so eviction does not sort the whole cache.
"""

from __future__ import annotations

import heapq
import itertools
import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import CACHE, get_logger
from models import PriceRecord, utc_now

logger = get_logger(__name__)

Key = Tuple[str, str]   # (source, pair_symbol)


class PriceCache:

    def __init__(
        self,
        max_size: int = CACHE["max_size"],
        cleanup_threshold: float = CACHE["cleanup_threshold"],
        purge_age_seconds: float = CACHE["purge_age_seconds"],
        default_max_age: float = CACHE["read_max_age_seconds"],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = int(max_size)
        self.cleanup_threshold = cleanup_threshold
        self.purge_age = timedelta(seconds=purge_age_seconds)
        self.default_max_age = default_max_age
        self._clock = clock

        self._entries: Dict[Key, PriceRecord] = {}
        self._versions: Dict[Key, int] = {}
        self._heap: List[Tuple[datetime, int, Key]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

        self.cleanups = 0
        self.purged = 0
        self.evicted = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ── Writes ───────────────────────────────────────────────────────────────

    def put(self, record: PriceRecord) -> bool:
        """
        Store ``record`` as the latest for its key.

        Returns False (and stores nothing) when the cache already holds a
        newer observation for the same key.
        """
        key = record.key
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and record.observed_at < existing.observed_at:
                return False
            seq = next(self._seq)
            self._entries[key] = record
            self._versions[key] = seq
            heapq.heappush(self._heap, (record.observed_at, seq, key))

            if len(self._entries) > self.max_size * self.cleanup_threshold:
                self._cleanup_locked()
            elif len(self._heap) > 2 * len(self._entries) + 64:
                self._compact_locked()
        return True

    def cleanup(self) -> int:
        """Purge expired entries and enforce capacity. Returns entries removed."""
        with self._lock:
            return self._cleanup_locked()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._versions.clear()
            self._heap.clear()

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(self, key: Key, max_age_seconds: Optional[float] = None) -> Optional[PriceRecord]:
        """Latest record for ``key``, or None if absent or older than ``max_age_seconds``."""
        with self._lock:
            record = self._entries.get(key)
        if record is None:
            return None
        if max_age_seconds is not None and record.age_seconds(self._clock()) > max_age_seconds:
            return None
        return record

    def get_fresh(self, max_age_seconds: Optional[float] = None) -> Dict[Key, PriceRecord]:
        """Snapshot of every record no older than ``max_age_seconds``."""
        max_age = self.default_max_age if max_age_seconds is None else max_age_seconds
        now = self._clock()
        with self._lock:
            items = list(self._entries.items())
        return {k: r for k, r in items if r.age_seconds(now) <= max_age}

    def get_pair(self, pair_symbol: str, max_age_seconds: Optional[float] = None) -> List[PriceRecord]:
        return [
            r for r in self.get_fresh(max_age_seconds).values()
            if r.pair_symbol == pair_symbol
        ]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            records = list(self._entries.values())
        return {
            "size": len(records),
            "max_size": self.max_size,
            "utilization": round(len(records) / self.max_size, 4),
            "synthetic": sum(1 for r in records if r.synthetic),
            "by_source": dict(Counter(r.source for r in records)),
            "cleanups": self.cleanups,
            "purged": self.purged,
            "evicted": self.evicted,
        }

    # ── Internals (caller holds the lock) ────────────────────────────────────

    def _pop_oldest(self) -> Optional[Tuple[datetime, Key]]:
        while self._heap:
            observed_at, seq, key = heapq.heappop(self._heap)
            if self._versions.get(key) == seq:
                return observed_at, key
        return None

    def _peek_oldest(self) -> Optional[datetime]:
        while self._heap:
            observed_at, seq, key = self._heap[0]
            if self._versions.get(key) == seq:
                return observed_at
            heapq.heappop(self._heap)
        return None

    def _remove(self, key: Key) -> None:
        self._entries.pop(key, None)
        self._versions.pop(key, None)

    def _cleanup_locked(self) -> int:
        self.cleanups += 1
        cutoff = self._clock() - self.purge_age
        purged = 0
        while True:
            oldest = self._peek_oldest()
            if oldest is None or oldest >= cutoff:
                break
            _, key = self._pop_oldest()
            self._remove(key)
            purged += 1

        evicted = 0
        while len(self._entries) > self.max_size:
            popped = self._pop_oldest()
            if popped is None:
                break
            self._remove(popped[1])
            evicted += 1

        self.purged += purged
        self.evicted += evicted
        if purged or evicted:
            logger.debug(
                "Cache cleanup: purged %d expired, evicted %d oldest, %d remain",
                purged, evicted, len(self._entries),
            )
        if len(self._heap) > 2 * len(self._entries) + 64:
            self._compact_locked()
        return purged + evicted

    def _compact_locked(self) -> None:
        self._heap = [
            item for item in self._heap if self._versions.get(item[2]) == item[1]
        ]
        heapq.heapify(self._heap)
