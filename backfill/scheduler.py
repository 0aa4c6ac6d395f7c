"""Gap-count driven range scheduler.

Backfills one ``(product, granularity, [start, end))`` request by walking an
explicit LIFO stack of windows:

1. windows with no unresolved buckets are dropped;
2. windows narrower than ``max_buckets`` are fetched in one upstream call,
   inserted, and any bucket still missing is marked as a sentinel;
3. wider windows are split at a bucket-aligned midpoint and the left half is
   processed first, so inserts arrive in time order.

Cancellation is checked between windows only; a window's
fetch/insert/mark sequence always runs to completion.

Updates: v0.2.0 - 2026-09-02 - Replaced recursive splitting with an explicit work stack.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from api.coinbase_client import MAX_CANDLES_PER_REQUEST, CoinbaseAPIClient, CoinbaseAPIError
from backfill.gap_marker import GapMarkingPool
from backfill.gaps import GapAnalyzer
from storage.candle_store import CandleStore, StoreError
from utils.market_data import align_down, bucket_seconds

logger = logging.getLogger(__name__)


class BackfillError(Exception):
    """A batch failed hard; carries the product and window that failed."""

    def __init__(self, message: str, product_id: str = "", start: int = 0, end: int = 0) -> None:
        super().__init__(message)
        self.product_id = product_id
        self.start = start
        self.end = end


class BackfillCancelled(Exception):
    """Raised at a window boundary once the cancellation event is set."""


@dataclass(slots=True)
class BatchReport:
    product_id: str
    start: int
    end: int
    fetched: int
    inserted: int
    marked: int
    already_resolved: int
    mark_failures: int


@dataclass(slots=True)
class BackfillResult:
    product_id: str
    granularity: str
    start: int
    end: int
    batches: int = 0
    splits: int = 0
    skipped_windows: int = 0
    fetched: int = 0
    inserted: int = 0
    marked: int = 0
    mark_failures: int = 0
    reports: List[BatchReport] = field(default_factory=list)

    def add(self, report: BatchReport) -> None:
        self.batches += 1
        self.fetched += report.fetched
        self.inserted += report.inserted
        self.marked += report.marked
        self.mark_failures += report.mark_failures
        self.reports.append(report)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("reports", None)
        return payload


class RangeScheduler:
    """Splits a range into upstream-legal windows and backfills each one."""

    def __init__(self, client: CoinbaseAPIClient, store: CandleStore, gap_marker: GapMarkingPool,
                 exchange: str = "coinbase", max_buckets: int = MAX_CANDLES_PER_REQUEST,
                 on_batch: Optional[Callable[[BatchReport], None]] = None) -> None:
        self.client = client
        self.store = store
        self.gap_marker = gap_marker
        self.exchange = exchange
        self.max_buckets = min(MAX_CANDLES_PER_REQUEST, max(1, max_buckets))
        self.on_batch = on_batch
        self.analyzer = GapAnalyzer(store, exchange)

    @staticmethod
    def split_point(start: int, end: int, step: int) -> int:
        """Midpoint of ``[start, end)`` truncated to a whole number of buckets from ``start``."""
        return start + ((end - start) // 2 // step) * step

    def backfill(self, product_id: str, start: int, end: int, granularity: str,
                 cancel_event: Optional[threading.Event] = None) -> BackfillResult:
        """Resolve every bucket of ``[start, end)`` for ``product_id``.

        Both bounds are floored to the bucket grid, so a bucket that has not
        closed yet at ``end`` is left for a later run.

        Raises:
            BackfillCancelled: ``cancel_event`` was set between windows.
            BackfillError: an upstream or storage failure aborted a window.
        """
        step = bucket_seconds(granularity)
        aligned_start = align_down(start, step)
        aligned_end = align_down(end, step)
        result = BackfillResult(product_id=product_id, granularity=granularity,
                                start=aligned_start, end=aligned_end)
        if aligned_end <= aligned_start:
            logger.info("Nothing to backfill for %s: empty window after alignment", product_id)
            return result

        logger.info("Backfilling %s %s from %d to %d", product_id, granularity, aligned_start, aligned_end)
        stack: List[Tuple[int, int]] = [(aligned_start, aligned_end)]

        while stack:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Backfill of %s cancelled with %d window(s) pending", product_id, len(stack))
                raise BackfillCancelled(f"Backfill of {product_id} cancelled")

            window_start, window_end = stack.pop()
            try:
                gaps = self.analyzer.gaps_to_fill(product_id, window_start, window_end, granularity)
            except StoreError as exc:
                raise BackfillError(
                    f"Gap count failed for {product_id} [{window_start}, {window_end}): {exc}",
                    product_id, window_start, window_end,
                ) from exc

            if gaps == 0:
                result.skipped_windows += 1
                logger.debug("Window [%d, %d) for %s already resolved", window_start, window_end, product_id)
                continue

            window_size = (window_end - window_start) // step
            if window_size < self.max_buckets:
                report = self._run_batch(product_id, window_start, window_end, granularity)
                result.add(report)
                if self.on_batch is not None:
                    self.on_batch(report)
                continue

            mid = self.split_point(window_start, window_end, step)
            result.splits += 1
            # LIFO: the left half is popped first.
            stack.append((mid, window_end))
            stack.append((window_start, mid))

        logger.info(
            "Backfill of %s done: %d batches, %d inserted, %d marked empty",
            product_id, result.batches, result.inserted, result.marked,
        )
        return result

    def _run_batch(self, product_id: str, start: int, end: int, granularity: str) -> BatchReport:
        """Fetch one window, insert it and mark what is still missing."""
        step = bucket_seconds(granularity)
        try:
            # Upstream end is inclusive.
            candles = self.client.get_candles(product_id, start, end - 1, granularity, limit=self.max_buckets)
            in_window = [c for c in candles if start <= c.time < end and (c.time - start) % step == 0]
            inserted = self.store.insert_candles(self.exchange, product_id, in_window)
            missing = self.analyzer.missing_timestamps(product_id, start, end, granularity)
        except (CoinbaseAPIError, StoreError) as exc:
            raise BackfillError(
                f"Batch failed for {product_id} [{start}, {end}): {exc}", product_id, start, end,
            ) from exc

        marks = self.gap_marker.mark(product_id, missing)
        report = BatchReport(
            product_id=product_id,
            start=start,
            end=end,
            fetched=len(in_window),
            inserted=inserted,
            marked=marks.marked,
            already_resolved=marks.already_resolved,
            mark_failures=len(marks.failed),
        )
        logger.info(
            "Batch %s [%d, %d): fetched=%d inserted=%d marked=%d failed=%d",
            product_id, start, end, report.fetched, report.inserted, report.marked, report.mark_failures,
        )
        return report
