"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Return current time as milliseconds since epoch."""
    return int(utc_now().timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    """Convert milliseconds since epoch to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware datetime to milliseconds since epoch."""
    return int(value.timestamp() * 1000)
