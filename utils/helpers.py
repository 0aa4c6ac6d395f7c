"""
Helper utilities for candlefill
"""

from datetime import datetime, timezone
from typing import Optional, Union

import pytz


def parse_time_input(value: Optional[str]) -> Optional[int]:
    """Parse a user supplied time into epoch seconds.

    Args:
        value: String value to parse. Accepts:
            - Epoch seconds integer (e.g., '1731763200')
            - ISO date 'YYYY-MM-DD'
            - ISO datetime 'YYYY-MM-DDTHH:MM:SS'
            - RFC3339 timestamp (e.g., '2024-01-01T00:00:00Z')

    Returns:
        Epoch seconds (int) or None when value was empty.

    Raises:
        ValueError: If parsing fails.
    """
    if value is None:
        return None

    candidate = str(value).strip()
    if not candidate:
        return None

    # Epoch seconds
    try:
        return int(candidate)
    except ValueError:
        pass

    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"):
        try:
            dt = datetime.strptime(candidate, fmt)
            return int(dt.replace(tzinfo=timezone.utc).timestamp())
        except ValueError:
            pass

    # RFC3339
    rfc = candidate[:-1] + "+00:00" if candidate.endswith("Z") else candidate
    try:
        dt = datetime.fromisoformat(rfc)
    except ValueError:
        raise ValueError(
            f"Invalid time '{value}'. Provide epoch seconds, 'YYYY-MM-DD', "
            "'YYYY-MM-DDTHH:MM:SS' or an RFC3339 timestamp."
        ) from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def format_timestamp(timestamp: Union[str, float, int],
                     timezone_name: str = "UTC") -> str:
    """Format timestamp to readable date/time"""
    try:
        if isinstance(timestamp, str):
            if timestamp.isdigit():
                timestamp = int(timestamp)
            else:
                # Assume it's already a formatted string
                return timestamp

        if timestamp > 1e10:  # Milliseconds
            dt = datetime.fromtimestamp(timestamp / 1000, tz=pytz.UTC)
        else:
            dt = datetime.fromtimestamp(timestamp, tz=pytz.UTC)

        if timezone_name != "UTC":
            dt = dt.astimezone(pytz.timezone(timezone_name))

        return dt.strftime("%Y-%m-%d %H:%M:%S %Z")
    except (ValueError, OSError, pytz.UnknownTimeZoneError):
        return str(timestamp)


def utc_day_start(timestamp: int) -> int:
    """Return the epoch second of 00:00 UTC on the day containing ``timestamp``."""
    dt = datetime.fromtimestamp(int(timestamp), tz=pytz.UTC)
    midnight = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp())


def format_duration(seconds: Union[int, float]) -> str:
    """Render a duration in seconds as a compact '1d 2h 3m 4s' string."""
    try:
        remaining = int(seconds)
    except (TypeError, ValueError):
        return str(seconds)
    if remaining <= 0:
        return "0s"

    parts = []
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        amount, remaining = divmod(remaining, size)
        if amount:
            parts.append(f"{amount}{unit}")
    return " ".join(parts)
