"""Backfill orchestration: single-product fetch, all-product history sweep, product sync.

Updates: v0.2.1 - 2026-09-10 - History sweep clamps today's window to the current time.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from api.coinbase_client import CoinbaseAPIClient, CoinbaseAPIError
from api.models import Account, Product
from backfill.gap_marker import GapMarkingPool
from backfill.scheduler import BackfillCancelled, BackfillError, BackfillResult, BatchReport, RangeScheduler
from config import Config, ConfigurationError
from storage.candle_store import CandleStore, ProductNotFoundError, StoreError
from utils.helpers import utc_day_start
from utils.market_data import SUPPORTED_GRANULARITIES, is_supported_granularity, normalize_granularity

logger = logging.getLogger(__name__)

DEFAULT_EXCHANGE = "coinbase"
DAY_SECONDS = 86400


class InvalidProductError(ConfigurationError):
    """The product id is not listed upstream."""


@dataclass(slots=True)
class SweepFailure:
    product_id: str
    day_start: int
    error: str


@dataclass(slots=True)
class SweepResult:
    granularity: str
    days: int = 0
    windows: int = 0
    batches: int = 0
    inserted: int = 0
    marked: int = 0
    failures: List[SweepFailure] = field(default_factory=list)

    def add(self, result: BackfillResult) -> None:
        self.windows += 1
        self.batches += result.batches
        self.inserted += result.inserted
        self.marked += result.marked

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granularity": self.granularity,
            "days": self.days,
            "windows": self.windows,
            "batches": self.batches,
            "inserted": self.inserted,
            "marked": self.marked,
            "failures": [
                {"product_id": f.product_id, "day_start": f.day_start, "error": f.error} for f in self.failures
            ],
        }


class BackfillService:
    """Wires client, store, scheduler and gap-marking pool together."""

    def __init__(self, client: CoinbaseAPIClient, store: CandleStore,
                 exchange: str = DEFAULT_EXCHANGE, gap_workers: int = 10, max_buckets: int = 350,
                 on_batch: Optional[Callable[[BatchReport], None]] = None,
                 clock: Callable[[], float] = time.time) -> None:
        self.client = client
        self.store = store
        self.exchange = exchange
        self._clock = clock
        self.gap_marker = GapMarkingPool(store, exchange=exchange, max_workers=gap_workers)
        self.scheduler = RangeScheduler(client, store, self.gap_marker, exchange=exchange,
                                        max_buckets=max_buckets, on_batch=on_batch)

    @classmethod
    def from_config(cls, config: Config,
                    on_batch: Optional[Callable[[BatchReport], None]] = None) -> "BackfillService":
        return cls(
            client=CoinbaseAPIClient.from_config(config),
            store=CandleStore(config.database_path),
            gap_workers=config.get_gap_workers(),
            max_buckets=config.get_max_buckets(),
            on_batch=on_batch,
        )

    def close(self) -> None:
        self.gap_marker.shutdown()

    def __enter__(self) -> "BackfillService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _check_granularity(granularity: str) -> str:
        if not is_supported_granularity(granularity):
            raise ConfigurationError(
                f"Unsupported granularity '{granularity}'. Use one of: {', '.join(SUPPORTED_GRANULARITIES)}"
            )
        return normalize_granularity(granularity)

    def validate_product(self, product_id: str) -> Product:
        """Return the upstream listing for ``product_id`` or raise ``InvalidProductError``."""
        if not product_id:
            raise InvalidProductError("--product is required, e.g. BTC-USD")
        products = self.client.list_products()
        for product in products:
            if product.product_id == product_id:
                return product
        raise InvalidProductError(f"Invalid product ID: {product_id}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def fetch(self, product_id: str, granularity: str = "1h", start: Optional[int] = None,
              end: Optional[int] = None, cancel_event: Optional[threading.Event] = None) -> BackfillResult:
        """Backfill one product; ``start`` defaults to its listing time and ``end`` to now."""
        granularity = self._check_granularity(granularity)
        if start is not None and end is not None and end <= start:
            raise ConfigurationError("End date must be after start date")

        product = self.validate_product(product_id)

        if start is None:
            try:
                start = self.store.get_product_new_at(self.exchange, product_id)
            except ProductNotFoundError:
                if product.new_at is None:
                    raise ConfigurationError(
                        f"No start date given and no listing time known for {product_id}"
                    ) from None
                start = product.new_at
        if end is None:
            end = int(self._clock())
        if end <= start:
            raise ConfigurationError("End date must be after start date")

        return self.scheduler.backfill(product_id, start, end, granularity, cancel_event=cancel_event)

    def history(self, granularity: str = "1m", cancel_event: Optional[threading.Event] = None,
                on_failure: Optional[Callable[[SweepFailure], None]] = None) -> SweepResult:
        """Sweep every enabled product day by day, newest day first.

        Each product's window is clamped to its listing time; products not yet
        listed on a given day are skipped. A failing product is logged and the
        sweep moves on. Cancellation stops the sweep.
        """
        granularity = self._check_granularity(granularity)
        result = SweepResult(granularity=granularity)

        products: List[Product] = []
        for product in self.store.get_all_products(self.exchange):
            if product.new_at is None:
                logger.warning("Skipping %s: no listing time recorded", product.product_id)
                continue
            products.append(product)
        earliest = self.store.earliest_product_start(self.exchange)
        if not products or earliest is None:
            logger.warning("No products with a listing time; run a product sync first")
            return result

        now = int(self._clock())
        day_end = utc_day_start(now) + DAY_SECONDS

        while day_end > earliest:
            day_start = day_end - DAY_SECONDS
            window_end = min(day_end, now)
            result.days += 1
            for product in products:
                listed_at = int(product.new_at)  # type: ignore[arg-type]
                if listed_at >= window_end:
                    continue
                effective_start = max(listed_at, day_start)
                try:
                    outcome = self.scheduler.backfill(
                        product.product_id, effective_start, window_end, granularity, cancel_event=cancel_event
                    )
                except BackfillCancelled:
                    raise
                except (BackfillError, CoinbaseAPIError, StoreError) as exc:
                    failure = SweepFailure(product.product_id, day_start, str(exc))
                    result.failures.append(failure)
                    logger.error("History backfill failed for %s on day %d: %s", product.product_id, day_start, exc)
                    if on_failure is not None:
                        on_failure(failure)
                    continue
                result.add(outcome)
            day_end = day_start

        logger.info(
            "History sweep done: %d days, %d inserted, %d marked, %d failures",
            result.days, result.inserted, result.marked, len(result.failures),
        )
        return result

    def sync_products(self) -> int:
        """Fetch the upstream product list and upsert it; returns rows written."""
        products = self.client.list_products()
        count = self.store.upsert_products(self.exchange, products)
        logger.info("Synced %d products for %s", count, self.exchange)
        return count

    def list_accounts(self) -> List[Account]:
        return self.client.list_accounts()
