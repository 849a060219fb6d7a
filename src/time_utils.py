"""Time zone helpers for UTC storage and subscriber-local scheduling."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def get_timezone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for an IANA name, raising ValueError when unknown."""
    if not name or not name.strip():
        raise ValueError("Timezone is required.")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Invalid timezone: {name}") from exc


def ensure_utc(value: datetime) -> datetime:
    """Convert a datetime to UTC, treating naive values as already UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(timezone.utc)


def truncate_to_minute(value: datetime) -> datetime:
    """Drop seconds and microseconds from a datetime."""
    return value.replace(second=0, microsecond=0)
