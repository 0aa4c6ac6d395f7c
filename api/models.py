"""Typed records for Coinbase Advanced Trade payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from utils.helpers import parse_time_input
from utils.market_data import parse_candle_start

SENTINEL_VOLUME = -1.0


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(slots=True, frozen=True)
class Candle:
    """One OHLCV bucket. ``time`` is the bucket start in UTC epoch seconds."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def is_sentinel(self) -> bool:
        """True when this row only records that the bucket is confirmed empty."""
        return self.volume == SENTINEL_VOLUME

    @classmethod
    def sentinel(cls, timestamp: int) -> "Candle":
        return cls(time=int(timestamp), open=0.0, high=0.0, low=0.0, close=0.0, volume=SENTINEL_VOLUME)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Candle":
        """Build a candle from an upstream ``candles[]`` entry (string encoded numbers)."""
        return cls(
            time=parse_candle_start(payload.get("start")),
            open=_to_float(payload.get("open")),
            high=_to_float(payload.get("high")),
            low=_to_float(payload.get("low")),
            close=_to_float(payload.get("close")),
            volume=_to_float(payload.get("volume")),
        )

    def to_row(self) -> tuple:
        return (self.time, self.open, self.high, self.low, self.close, self.volume)


@dataclass(slots=True)
class Product:
    """Trading product metadata as listed by ``/market/products``."""

    product_id: str
    base_name: str = ""
    quote_name: str = ""
    base_currency_id: str = ""
    quote_currency_id: str = ""
    status: str = ""
    product_type: str = ""
    is_disabled: bool = False
    trading_disabled: bool = False
    price: float = 0.0
    volume_24h: float = 0.0
    base_increment: float = 0.0
    quote_increment: float = 0.0
    display_name: str = ""
    alias: str = ""
    alias_to: List[str] = field(default_factory=list)
    new_at: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Product":
        new_at_value = payload.get("new_at")
        try:
            new_at = parse_time_input(new_at_value) if new_at_value else None
        except ValueError:
            new_at = None

        return cls(
            product_id=str(payload.get("product_id", "")),
            base_name=str(payload.get("base_name") or ""),
            quote_name=str(payload.get("quote_name") or ""),
            base_currency_id=str(payload.get("base_currency_id") or ""),
            quote_currency_id=str(payload.get("quote_currency_id") or ""),
            status=str(payload.get("status") or ""),
            product_type=str(payload.get("product_type") or ""),
            is_disabled=bool(payload.get("is_disabled", False)),
            trading_disabled=bool(payload.get("trading_disabled", False)),
            price=_to_float(payload.get("price")),
            volume_24h=_to_float(payload.get("volume_24h")),
            base_increment=_to_float(payload.get("base_increment")),
            quote_increment=_to_float(payload.get("quote_increment")),
            display_name=str(payload.get("display_name") or ""),
            alias=str(payload.get("alias") or ""),
            alias_to=[str(item) for item in payload.get("alias_to") or []],
            new_at=new_at,
            raw=dict(payload),
        )


@dataclass(slots=True)
class Account:
    """Brokerage account balance summary."""

    uuid: str
    name: str
    currency: str
    available_balance: float
    hold: float
    active: bool = True
    ready: bool = True
    account_type: str = ""

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Account":
        available = payload.get("available_balance") or {}
        hold = payload.get("hold") or {}
        return cls(
            uuid=str(payload.get("uuid", "")),
            name=str(payload.get("name") or ""),
            currency=str(payload.get("currency") or available.get("currency") or ""),
            available_balance=_to_float(available.get("value")),
            hold=_to_float(hold.get("value")),
            active=bool(payload.get("active", True)),
            ready=bool(payload.get("ready", True)),
            account_type=str(payload.get("type") or ""),
        )
