"""
price_feed.py
==============
Writer side of the price cache.

``PriceFeed`` pulls every configured source through the fallback manager,
validates what comes back (cross-source consensus, then per-record sanity
against the previously cached observation) and stores survivors in the
cache.  ``ingest`` is the single entry point into the cache, used by both
the synchronous ``refresh`` and the background polling workers.

Polling workers: one daemon thread per source, each sleeping ``interval``
seconds between polls on a shared stop event.  There is no streaming
transport; sources without a push API are polled, which covers all of the
current Algorand DEX endpoints.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from config import ORCHESTRATOR, get_logger
from dex_sources import DexSource
from fallback_manager import FallbackManager
from models import PriceRecord, utc_now
from price_cache import Key, PriceCache
from price_validator import PriceValidator

logger = get_logger(__name__)


class PriceFeed:

    def __init__(
        self,
        sources: List[DexSource],
        cache: PriceCache,
        validator: Optional[PriceValidator] = None,
        fallback: Optional[FallbackManager] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sources = list(sources)
        self.cache = cache
        self.validator = validator or PriceValidator(clock=clock)
        self.fallback = fallback or FallbackManager(clock=clock)
        self._clock = clock
        self._ingest_lock = threading.Lock()
        self._stop = threading.Event()
        self._workers: Dict[str, threading.Thread] = {}

    # ── Synchronous refresh ──────────────────────────────────────────────────

    def fetch_source(self, source: DexSource, pair_symbols: Iterable[str]) -> List[PriceRecord]:
        pairs = sorted(set(pair_symbols))
        return self.fallback.call(source.name, lambda: source.fetch(pairs), pairs)

    def refresh(self, pair_symbols: Iterable[str]) -> int:
        """Fetch all sources once and ingest. Returns the number of records cached."""
        pairs = sorted(set(pair_symbols))
        collected: List[PriceRecord] = []
        for source in self.sources:
            try:
                collected.extend(self.fetch_source(source, pairs))
            except Exception as exc:
                logger.error("%s: unexpected error during refresh: %s", source.name, exc, exc_info=True)
        stored = self.ingest(collected)
        logger.info(
            "Price refresh: %d/%d records cached from %d sources",
            stored, len(collected), len(self.sources),
        )
        return stored

    def ingest(self, records: Iterable[PriceRecord]) -> int:
        """
        Validate ``records`` against the cache and store the survivors.

        Fresh cached records of other sources for the same pairs join the
        cross-source consensus, so a batch from a single polling worker is
        checked against what the other workers last stored.
        """
        records = list(records)
        if not records:
            return 0
        with self._ingest_lock:
            previous: Dict[Key, PriceRecord] = {}
            reference: List[PriceRecord] = []
            for record in records:
                cached = self.cache.get(record.key)
                if cached is not None:
                    previous[record.key] = cached
            for pair in {r.pair_symbol for r in records}:
                reference.extend(self.cache.get_pair(pair))
            valid = self.validator.validate_collection(
                records, previous, now=self._clock(), reference=reference
            )
            return sum(1 for record in valid if self.cache.put(record))

    def snapshot(self, max_age_seconds: Optional[float] = None) -> Dict[Key, PriceRecord]:
        return self.cache.get_fresh(max_age_seconds)

    # ── Background polling ───────────────────────────────────────────────────

    @property
    def polling(self) -> bool:
        return any(t.is_alive() for t in self._workers.values())

    def start_polling(self, pair_symbols: Iterable[str], interval: Optional[float] = None) -> None:
        """Start one polling worker per source. No-op if already running."""
        if self.polling:
            logger.debug("Polling already running")
            return
        interval = float(interval if interval is not None else ORCHESTRATOR["poll_interval_seconds"])
        pairs = sorted(set(pair_symbols))
        self._stop.clear()
        self._workers = {}
        for source in self.sources:
            worker = threading.Thread(
                target=self._poll_loop,
                args=(source, pairs, interval),
                name=f"poll-{source.name}",
                daemon=True,
            )
            self._workers[source.name] = worker
            worker.start()
        logger.info("Started %d polling workers (interval %.0fs)", len(self._workers), interval)

    def stop_polling(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for worker in self._workers.values():
            worker.join(timeout)
        self._workers = {}

    def _poll_loop(self, source: DexSource, pairs: List[str], interval: float) -> None:
        while not self._stop.is_set():
            try:
                self.ingest(self.fetch_source(source, pairs))
            except Exception as exc:
                logger.error("%s poller error: %s", source.name, exc, exc_info=True)
            self._stop.wait(interval)
        logger.debug("%s poller stopped", source.name)
