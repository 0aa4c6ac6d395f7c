"""Candle granularity helpers for candlefill.

Maps human granularity labels to bucket widths and Coinbase enum names, and
aligns epoch timestamps to the bucket grid.

Updates: v0.2.0 - 2026-09-02 - Added label aliases and the upstream enum table.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

logger = logging.getLogger(__name__)

DEFAULT_BUCKET_SECONDS = 3600

GRANULARITY_SECONDS: Dict[str, int] = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "2h": 7200,
    "6h": 21600,
    "1d": 86400,
}

API_GRANULARITY: Dict[str, str] = {
    "1m": "ONE_MINUTE",
    "5m": "FIVE_MINUTE",
    "15m": "FIFTEEN_MINUTE",
    "30m": "THIRTY_MINUTE",
    "1h": "ONE_HOUR",
    "2h": "TWO_HOUR",
    "6h": "SIX_HOUR",
    "1d": "ONE_DAY",
}

_LABEL_ALIASES: Dict[str, str] = {
    "1min": "1m",
    "one_minute": "1m",
    "5min": "5m",
    "five_minute": "5m",
    "15min": "15m",
    "fifteen_minute": "15m",
    "30min": "30m",
    "thirty_minute": "30m",
    "60m": "1h",
    "one_hour": "1h",
    "120m": "2h",
    "two_hour": "2h",
    "six_hour": "6h",
    "24h": "1d",
    "one_day": "1d",
}

SUPPORTED_GRANULARITIES: Tuple[str, ...] = tuple(GRANULARITY_SECONDS)


def normalize_granularity(label: str) -> str:
    """Return the canonical short label (``1m`` .. ``1d``) for ``label``.

    Unknown labels are returned lower-cased and stripped so callers can decide
    how to treat them.
    """

    normalized = str(label or "").strip().lower()
    return _LABEL_ALIASES.get(normalized, normalized)


def is_supported_granularity(label: str) -> bool:
    """Return True when ``label`` (or one of its aliases) is a known granularity."""

    return normalize_granularity(label) in GRANULARITY_SECONDS


def bucket_seconds(label: str) -> int:
    """Return the bucket width in seconds for a granularity label.

    Args:
        label: Granularity label such as ``1m`` or ``ONE_HOUR``.

    Returns:
        Bucket width in seconds. Unrecognised labels fall back to
        ``DEFAULT_BUCKET_SECONDS`` and log a warning.
    """

    seconds = GRANULARITY_SECONDS.get(normalize_granularity(label))
    if seconds is None:
        logger.warning(
            "Unknown granularity '%s'; defaulting to %d second buckets", label, DEFAULT_BUCKET_SECONDS
        )
        return DEFAULT_BUCKET_SECONDS
    return seconds


def api_granularity(label: str) -> str:
    """Return the upstream enum name for a granularity label."""

    normalized = normalize_granularity(label)
    enum_name = API_GRANULARITY.get(normalized)
    if enum_name is None:
        raise ValueError(
            f"Unsupported granularity '{label}'. Use one of: {', '.join(SUPPORTED_GRANULARITIES)}"
        )
    return enum_name


def align_down(timestamp: int, step: int) -> int:
    """Truncate ``timestamp`` to the start of its bucket."""

    return (int(timestamp) // step) * step


def align_up(timestamp: int, step: int) -> int:
    return ((int(timestamp) + step - 1) // step) * step


def parse_candle_start(value: Any) -> int:
    """Parse a candle ``start`` field given as epoch seconds or RFC3339 text."""

    if isinstance(value, (int, float)):
        return int(value)

    candidate = str(value).strip()
    try:
        return int(candidate)
    except ValueError:
        pass

    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ValueError(f"Unrecognised candle start value: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())
