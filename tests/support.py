"""Helpers shared by the test modules: canned candles and a scripted candle client."""

from __future__ import annotations

from typing import Callable, List, Optional, Tuple

from api.models import Candle, Product

# 2024-01-01T00:00:00Z
JAN_1_2024 = 1704067200

CandleFactory = Callable[[str, int, int, str], List[Candle]]


def make_candle(ts: int, price: float = 100.0, volume: float = 1.5) -> Candle:
    return Candle(time=ts, open=price, high=price + 1, low=price - 1, close=price + 0.5, volume=volume)


def full_window(step: int) -> CandleFactory:
    """Factory returning a candle for every bucket of the inclusive upstream window."""

    def _factory(product_id: str, start: int, end: int, granularity: str) -> List[Candle]:
        # Newest first, like the upstream.
        return [make_candle(ts) for ts in range(end - (end - start) % step, start - 1, -step)]

    return _factory


class FakeCandleClient:
    """Stands in for CoinbaseAPIClient; records every candle request."""

    def __init__(self, candle_factory: Optional[CandleFactory] = None,
                 products: Optional[List[Product]] = None) -> None:
        self.candle_factory = candle_factory or (lambda product_id, start, end, granularity: [])
        self.products = list(products or [])
        self.calls: List[Tuple[str, int, int, str, int]] = []
        self.list_products_calls = 0

    def get_candles(self, product_id: str, start: int, end: int, granularity: str, limit: int = 350) -> List[Candle]:
        self.calls.append((product_id, start, end, granularity, limit))
        return sorted(self.candle_factory(product_id, start, end, granularity), key=lambda c: c.time)

    def list_products(self) -> List[Product]:
        self.list_products_calls += 1
        return list(self.products)

    def list_accounts(self) -> list:
        return []
