"""Tests for backfill orchestration: fetch, history sweep and product sync."""

from __future__ import annotations

import threading

import pytest

from api.coinbase_client import CoinbaseAPIError
from api.models import Product
from backfill.scheduler import BackfillCancelled
from backfill.service import BackfillService, InvalidProductError, SweepFailure
from config import ConfigurationError
from storage.candle_store import CandleStore
from support import JAN_1_2024, FakeCandleClient, full_window

HOUR = 3600
DAY = 86400


def _service(client: FakeCandleClient, store: CandleStore, now: int = JAN_1_2024 + 30 * DAY) -> BackfillService:
    return BackfillService(client, store, gap_workers=2, clock=lambda: now)  # type: ignore[arg-type]


def test_fetch_rejects_unknown_product(store: CandleStore) -> None:
    client = FakeCandleClient(full_window(HOUR), products=[Product(product_id="BTC-USD")])

    with _service(client, store) as service, pytest.raises(InvalidProductError, match="Invalid product ID: NOPE-USD"):
        service.fetch("NOPE-USD", "1h", JAN_1_2024, JAN_1_2024 + HOUR)

    assert client.calls == []


def test_fetch_rejects_inverted_range_before_calling_upstream(store: CandleStore) -> None:
    client = FakeCandleClient(products=[Product(product_id="BTC-USD")])

    with _service(client, store) as service, pytest.raises(ConfigurationError, match="End date must be after"):
        service.fetch("BTC-USD", "1h", JAN_1_2024 + HOUR, JAN_1_2024)

    assert client.list_products_calls == 0


def test_fetch_rejects_unknown_granularity(store: CandleStore) -> None:
    client = FakeCandleClient(products=[Product(product_id="BTC-USD")])

    with _service(client, store) as service, pytest.raises(ConfigurationError, match="Unsupported granularity"):
        service.fetch("BTC-USD", "3h", JAN_1_2024, JAN_1_2024 + HOUR)


def test_fetch_explicit_range(store: CandleStore) -> None:
    client = FakeCandleClient(full_window(HOUR), products=[Product(product_id="BTC-USD")])

    with _service(client, store) as service:
        result = service.fetch("BTC-USD", "ONE_HOUR", JAN_1_2024, JAN_1_2024 + 24 * HOUR)

    assert result.granularity == "1h"
    assert result.inserted == 24


def test_fetch_defaults_start_to_stored_listing_time(store: CandleStore) -> None:
    listed = JAN_1_2024 + 29 * DAY
    store.upsert_products("coinbase", [Product(product_id="BTC-USD", new_at=listed)])
    client = FakeCandleClient(full_window(HOUR), products=[Product(product_id="BTC-USD", new_at=JAN_1_2024)])
    now = listed + 5 * HOUR + 120

    with _service(client, store, now=now) as service:
        result = service.fetch("BTC-USD", "1h")

    assert (result.start, result.end) == (listed, listed + 5 * HOUR)
    assert result.inserted == 5


def test_fetch_falls_back_to_upstream_listing_time(store: CandleStore) -> None:
    client = FakeCandleClient(full_window(HOUR), products=[Product(product_id="BTC-USD", new_at=JAN_1_2024)])

    with _service(client, store, now=JAN_1_2024 + 3 * HOUR) as service:
        result = service.fetch("BTC-USD", "1h")

    assert result.start == JAN_1_2024
    assert result.inserted == 3


def test_fetch_without_any_listing_time_fails(store: CandleStore) -> None:
    client = FakeCandleClient(products=[Product(product_id="BTC-USD")])

    with _service(client, store) as service, pytest.raises(ConfigurationError, match="No start date"):
        service.fetch("BTC-USD", "1h")


def test_sync_products_upserts_upstream_list(store: CandleStore) -> None:
    client = FakeCandleClient(products=[
        Product(product_id="BTC-USD", new_at=JAN_1_2024),
        Product(product_id="ETH-USD", new_at=JAN_1_2024 + DAY),
    ])

    with _service(client, store) as service:
        assert service.sync_products() == 2

    assert store.get_product_new_at("coinbase", "ETH-USD") == JAN_1_2024 + DAY


def _history_fixture(store: CandleStore) -> int:
    """Store two products and return a 'now' two hours into Jan 2nd."""
    day0 = JAN_1_2024 + DAY
    store.upsert_products("coinbase", [
        Product(product_id="AAA-USD", new_at=JAN_1_2024),
        Product(product_id="BBB-USD", new_at=day0 + HOUR),
        Product(product_id="NOLIST-USD"),
    ])
    return day0 + 2 * HOUR


def test_history_walks_days_newest_first(store: CandleStore) -> None:
    now = _history_fixture(store)
    client = FakeCandleClient(full_window(HOUR))

    with _service(client, store, now=now) as service:
        result = service.history(granularity="1h")

    day0 = JAN_1_2024 + DAY
    windows = [(c[0], c[1], c[2] + 1) for c in client.calls]
    assert windows == [
        ("AAA-USD", day0, day0 + 2 * HOUR),
        ("BBB-USD", day0 + HOUR, day0 + 2 * HOUR),
        ("AAA-USD", JAN_1_2024, day0),
    ]
    assert result.days == 2
    assert result.windows == 3
    assert result.inserted == 2 + 1 + 24
    assert result.failures == []


def test_history_continues_after_product_failure(store: CandleStore) -> None:
    now = _history_fixture(store)
    candles = full_window(HOUR)

    def _factory(product_id, start, end, granularity):
        if product_id == "BBB-USD":
            raise CoinbaseAPIError("Coinbase HTTP 500: down", status_code=500, retriable=True)
        return candles(product_id, start, end, granularity)

    client = FakeCandleClient(_factory)
    seen: list[SweepFailure] = []

    with _service(client, store, now=now) as service:
        result = service.history(granularity="1h", on_failure=seen.append)

    assert [f.product_id for f in result.failures] == ["BBB-USD"]
    assert seen == result.failures
    assert result.windows == 2
    assert store.count_gaps_to_fill("coinbase", "AAA-USD", JAN_1_2024, now, HOUR) == 0


def test_history_stops_on_cancel(store: CandleStore) -> None:
    now = _history_fixture(store)
    client = FakeCandleClient(full_window(HOUR))
    cancel = threading.Event()
    cancel.set()

    with _service(client, store, now=now) as service, pytest.raises(BackfillCancelled):
        service.history(granularity="1h", cancel_event=cancel)

    assert client.calls == []


def test_history_without_products_is_a_no_op(store: CandleStore) -> None:
    client = FakeCandleClient(full_window(HOUR))

    with _service(client, store) as service:
        result = service.history()

    assert result.days == 0
    assert client.calls == []
