"""Cadence configuration model and validation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
from zoneinfo import ZoneInfo

from episode_scheduler.errors import SchedulingError
from models import Project
from time_utils import get_timezone

CADENCE_MODES = ("daily", "weekly", "custom")
# Weekdays are numbered 0=Sunday through 6=Saturday.
ALL_WEEKDAYS = frozenset(range(7))


@dataclass(frozen=True)
class Cadence:
    """Delivery cadence: a mode, the weekdays it fires on, and a local hour."""

    mode: str
    days: frozenset[int]
    delivery_hour: int

    def fires_on(self, weekday: int) -> bool:
        """Return True when the cadence delivers on the given weekday."""
        if self.mode == "daily":
            return True
        return weekday in self.days

    def to_dict(self) -> dict[str, object]:
        """Return the cadence in its stored JSON-friendly form."""
        return {
            "mode": self.mode,
            "days": sorted(self.days),
            "delivery_hour": self.delivery_hour,
        }


def validate_cadence(mode: str, days: Iterable[int] | None, delivery_hour: int) -> Cadence:
    """Validate raw cadence inputs and return a Cadence."""
    normalized_mode = (mode or "").strip().lower()
    if normalized_mode not in CADENCE_MODES:
        raise SchedulingError(
            f"Unsupported cadence mode: {mode!r}.",
            details={"mode": mode},
        )
    if isinstance(delivery_hour, bool) or not isinstance(delivery_hour, int):
        raise SchedulingError("delivery_hour must be an integer.")
    if not 0 <= delivery_hour <= 23:
        raise SchedulingError(
            f"delivery_hour must be between 0 and 23, got {delivery_hour}.",
            details={"delivery_hour": delivery_hour},
        )

    if normalized_mode == "daily":
        return Cadence(mode="daily", days=ALL_WEEKDAYS, delivery_hour=delivery_hour)

    weekday_set: set[int] = set()
    for day in days or ():
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise SchedulingError(
                f"Cadence weekdays must be integers 0-6 (0=Sunday), got {day!r}.",
                details={"days": list(days or ())},
            )
        weekday_set.add(day)
    if not weekday_set:
        raise SchedulingError(f"Cadence mode {normalized_mode} requires at least one weekday.")
    return Cadence(mode=normalized_mode, days=frozenset(weekday_set), delivery_hour=delivery_hour)


def validate_timezone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for an IANA name, raising SchedulingError when unknown."""
    try:
        return get_timezone(name)
    except ValueError as exc:
        raise SchedulingError(str(exc), details={"timezone": name}) from exc


def cadence_for_project(project: Project) -> Cadence:
    """Build the cadence stored on a project."""
    return validate_cadence(project.cadence_mode, project.cadence_days, project.delivery_hour)
