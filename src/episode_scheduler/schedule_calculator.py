"""Pure helpers for computing delivery slots and generation start times."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone

from dateutil import tz as dateutil_tz

from config import settings
from episode_scheduler.cadence import Cadence, validate_timezone
from time_utils import ensure_utc

LOGGER = logging.getLogger(__name__)

# A weekly cadence repeats within 7 days; one extra day covers a slot earlier today.
_SEARCH_DAYS = 8


def default_lead_time() -> timedelta:
    """Return the configured generation lead time."""
    return timedelta(minutes=settings.scheduler.generation_lead_minutes)


def next_delivery(cadence: Cadence, timezone_name: str, now: datetime) -> datetime:
    """Return the first delivery instant strictly after now, in UTC.

    The cadence hour is interpreted in the project's local timezone. A local
    hour skipped by a DST jump resolves forward to the first valid instant; a
    repeated hour resolves to its first occurrence.
    """
    zone = validate_timezone(timezone_name)
    reference = ensure_utc(now)
    local_today = reference.astimezone(zone).date()
    for offset in range(_SEARCH_DAYS):
        day = local_today + timedelta(days=offset)
        if not cadence.fires_on(_sunday_first_weekday(day)):
            continue
        candidate = _resolve_local_instant(day, cadence.delivery_hour, zone)
        if candidate > reference:
            return candidate
    raise AssertionError(f"No delivery slot found within {_SEARCH_DAYS} days for {cadence}.")


def generation_start(delivery: datetime, lead: timedelta | None = None) -> datetime:
    """Return the instant generation must begin for a delivery instant."""
    return ensure_utc(delivery) - (lead if lead is not None else default_lead_time())


def _sunday_first_weekday(day: date) -> int:
    """Return the weekday number with 0=Sunday through 6=Saturday."""
    return day.isoweekday() % 7


def _resolve_local_instant(day: date, hour: int, zone) -> datetime:
    """Resolve a local wall-clock hour on a day to a UTC instant."""
    local = datetime.combine(day, time(hour=hour), tzinfo=zone).replace(fold=0)
    if not dateutil_tz.datetime_exists(local):
        resolved = dateutil_tz.resolve_imaginary(local)
        LOGGER.debug(
            "Local time %s does not exist in %s; using %s.",
            local.replace(tzinfo=None).isoformat(),
            zone,
            resolved.isoformat(),
        )
        local = resolved
    return local.astimezone(timezone.utc)
