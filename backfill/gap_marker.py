"""Bounded worker pool that records confirmed-empty buckets as sentinel candles."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from storage.candle_store import CandleStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_GAP_WORKERS = 10


@dataclass(slots=True)
class MarkResult:
    marked: int = 0
    already_resolved: int = 0
    failed: List[int] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.marked + self.already_resolved + len(self.failed)


class GapMarkingPool:
    """Marks residual timestamps with sentinel rows using a reusable thread pool.

    The executor is created once and reused for every batch; ``mark`` blocks
    until every submitted insert has finished, so no work outlives its batch.
    """

    def __init__(self, store: CandleStore, exchange: str = "coinbase",
                 max_workers: int = DEFAULT_GAP_WORKERS) -> None:
        self.store = store
        self.exchange = exchange
        self.max_workers = max(1, max_workers)
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gap-marker")
        self._closed = False

    def _mark_one(self, product_id: str, timestamp: int) -> int:
        return self.store.insert_sentinel(self.exchange, product_id, timestamp)

    def mark(self, product_id: str, timestamps: Sequence[int]) -> MarkResult:
        """Insert a sentinel for each timestamp and wait for all of them.

        A failed insert is logged and recorded; it does not cancel the others.
        """
        result = MarkResult()
        if not timestamps:
            return result
        if self._closed:
            raise RuntimeError("GapMarkingPool has been shut down")

        futures: Dict[Future, int] = {
            self._executor.submit(self._mark_one, product_id, ts): ts for ts in timestamps
        }
        for future in as_completed(futures):
            ts = futures[future]
            try:
                inserted = future.result()
            except StoreError as exc:
                logger.error("Failed to mark gap for %s at %d: %s", product_id, ts, exc)
                result.failed.append(ts)
                continue
            if inserted:
                result.marked += 1
                logger.debug("Marked empty bucket for %s at %d", product_id, ts)
            else:
                result.already_resolved += 1
                logger.debug("Bucket for %s at %d already resolved", product_id, ts)

        result.failed.sort()
        return result

    def shutdown(self) -> None:
        if not self._closed:
            self._closed = True
            self._executor.shutdown(wait=True)

    def __enter__(self) -> "GapMarkingPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
