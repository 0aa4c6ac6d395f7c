"""Read-side gap analysis over the candle store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from storage.candle_store import CandleStore
from utils.market_data import align_down, align_up, bucket_seconds


@dataclass(slots=True, frozen=True)
class Gap:
    """Maximal half-open run ``[start, end)`` of unresolved buckets."""

    start: int
    end: int
    missing_count: int

    def to_dict(self) -> Dict[str, int]:
        return {"start": self.start, "end": self.end, "missing_count": self.missing_count}


@dataclass(slots=True)
class CoverageSummary:
    expected: int
    present: int
    sentinels: int
    missing: int

    @property
    def coverage_ratio(self) -> float:
        return (self.present + self.sentinels) / self.expected if self.expected else 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expected": self.expected,
            "present": self.present,
            "sentinels": self.sentinels,
            "missing": self.missing,
            "coverage_ratio": self.coverage_ratio,
        }


class GapAnalyzer:
    """Stateless queries answering "what is still missing" for a product."""

    def __init__(self, store: CandleStore, exchange: str = "coinbase") -> None:
        self.store = store
        self.exchange = exchange

    @staticmethod
    def expected_buckets(start: int, end: int, granularity: str) -> int:
        return max(0, (int(end) - int(start)) // bucket_seconds(granularity))

    def gaps_to_fill(self, product_id: str, start: int, end: int, granularity: str) -> int:
        return self.store.count_gaps_to_fill(self.exchange, product_id, start, end, bucket_seconds(granularity))

    def missing_timestamps(self, product_id: str, start: int, end: int, granularity: str) -> List[int]:
        return self.store.get_missing_candle_timestamps(
            self.exchange, product_id, start, end, bucket_seconds(granularity)
        )

    def find_gaps(self, product_id: str, start: int, end: int,
                  granularity: str) -> Tuple[List[Gap], CoverageSummary]:
        """Compute contiguous missing ranges and coverage for a window.

        The window is aligned inward to the bucket grid (start rounded up,
        end rounded down) before scanning. Sentinel rows count as resolved.
        """
        step = bucket_seconds(granularity)
        aligned_start = align_up(start, step)
        aligned_end = align_down(end, step)
        if aligned_end <= aligned_start:
            return [], CoverageSummary(expected=0, present=0, sentinels=0, missing=0)

        expected_count = self.expected_buckets(aligned_start, aligned_end, granularity)
        gaps: List[Gap] = []
        present = 0
        sentinels = 0
        cursor = aligned_start

        for ts, is_sentinel in self.store.iter_candle_times(self.exchange, product_id, aligned_start, aligned_end):
            # Off-grid rows are not buckets of this granularity.
            if ts < cursor or (ts - aligned_start) % step:
                continue
            if cursor < ts:
                gaps.append(Gap(start=cursor, end=ts, missing_count=(ts - cursor) // step))
            if is_sentinel:
                sentinels += 1
            else:
                present += 1
            cursor = ts + step

        if cursor < aligned_end:
            gaps.append(Gap(start=cursor, end=aligned_end, missing_count=(aligned_end - cursor) // step))

        summary = CoverageSummary(
            expected=expected_count,
            present=present,
            sentinels=sentinels,
            missing=sum(gap.missing_count for gap in gaps),
        )
        return gaps, summary
