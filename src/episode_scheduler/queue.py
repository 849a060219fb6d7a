"""Leasable generation queue backed by conditional updates."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from episode_scheduler.errors import LeaseConflict
from episode_scheduler.schedule_calculator import generation_start
from models import (
    ACTIVE_QUEUE_STATUSES,
    Episode,
    GenerationQueueEntry,
    QueueStatusEnum,
)

logger = logging.getLogger(__name__)

TIER_PRIORITIES = {
    "ENTERPRISE": 10,
    "GROWTH": 9,
    "TRIAL": 6,
}
RETRY_PRIORITY = 8
DEFAULT_PRIORITY = 5

TERMINAL_QUEUE_STATUSES = ("completed", "failed", "cancelled", "blocked")


def _normalize_timestamp(value: datetime, label: str) -> datetime:
    """Ensure timestamps are timezone-aware UTC, defaulting to UTC if naive."""
    if value.tzinfo is None:
        logger.warning("Naive timestamp provided for %s; assuming UTC.", label)
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_priority(tier: str | None, attempt_count: int = 0) -> int:
    """Return the queue priority for a subscription tier and attempt number."""
    priority = TIER_PRIORITIES.get((tier or "").upper(), DEFAULT_PRIORITY)
    if attempt_count > 0:
        priority = max(priority, RETRY_PRIORITY)
    return priority


def get_entry(session: Session, entry_id: uuid.UUID) -> GenerationQueueEntry | None:
    """Return a queue entry by id."""
    return session.get(GenerationQueueEntry, entry_id)


def get_active_entry(session: Session, episode_id: uuid.UUID) -> GenerationQueueEntry | None:
    """Return the pending or processing entry for an episode, if any."""
    return (
        session.query(GenerationQueueEntry)
        .filter(
            GenerationQueueEntry.episode_id == episode_id,
            GenerationQueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
        )
        .first()
    )


def enqueue_episode(
    session: Session,
    episode: Episode,
    *,
    priority: int,
    now: datetime,
    lead: timedelta | None = None,
) -> GenerationQueueEntry:
    """Create the active queue entry for an episode unless one already exists."""
    existing = get_active_entry(session, episode.id)
    if existing is not None:
        return existing

    timestamp = _normalize_timestamp(now, "created_at")
    entry = GenerationQueueEntry(
        episode_id=episode.id,
        project_id=episode.project_id,
        organization_id=episode.organization_id,
        priority=priority,
        generation_start_time=generation_start(episode.scheduled_for, lead),
        target_delivery_time=episode.scheduled_for,
        status="pending",
        attempt_count=0,
        created_at=timestamp,
        updated_at=timestamp,
    )
    try:
        with session.begin_nested():
            session.add(entry)
            session.flush()
    except IntegrityError:
        existing = get_active_entry(session, episode.id)
        if existing is None:
            raise
        logger.info("Queue entry for episode %s was created concurrently; reusing it.", episode.id)
        return existing

    logger.info(
        "Enqueued episode %s priority=%s generation_start=%s",
        episode.id,
        priority,
        entry.generation_start_time.isoformat(),
    )
    return entry


def _lease_available(now: datetime):
    return or_(
        GenerationQueueEntry.lease_holder.is_(None),
        GenerationQueueEntry.lease_expires_at < now,
    )


def list_dispatchable(session: Session, now: datetime, *, limit: int) -> list[GenerationQueueEntry]:
    """Return entries eligible for dispatch in service order.

    Pending entries qualify once their generation start (and retry time, when
    set) has passed. Processing entries qualify only when a dispatcher took
    the lease and let it expire without releasing it.
    """
    now = _normalize_timestamp(now, "now")
    pending_due = and_(
        GenerationQueueEntry.status == "pending",
        GenerationQueueEntry.generation_start_time <= now,
        GenerationQueueEntry.target_delivery_time > now,
        or_(
            GenerationQueueEntry.next_retry_at.is_(None),
            GenerationQueueEntry.next_retry_at <= now,
        ),
        _lease_available(now),
    )
    abandoned = and_(
        GenerationQueueEntry.status == "processing",
        GenerationQueueEntry.lease_holder.is_not(None),
        GenerationQueueEntry.lease_expires_at < now,
    )
    return (
        session.query(GenerationQueueEntry)
        .filter(GenerationQueueEntry.episode_id.is_not(None))
        .filter(or_(pending_due, abandoned))
        .order_by(
            GenerationQueueEntry.priority.desc(),
            GenerationQueueEntry.generation_start_time.asc(),
            GenerationQueueEntry.episode_id.asc(),
        )
        .limit(limit)
        .all()
    )


def list_overdue(session: Session, now: datetime, *, limit: int) -> list[GenerationQueueEntry]:
    """Return pending entries whose delivery instant has passed."""
    now = _normalize_timestamp(now, "now")
    return (
        session.query(GenerationQueueEntry)
        .filter(
            GenerationQueueEntry.status == "pending",
            GenerationQueueEntry.target_delivery_time <= now,
            _lease_available(now),
        )
        .order_by(GenerationQueueEntry.target_delivery_time.asc(), GenerationQueueEntry.id.asc())
        .limit(limit)
        .all()
    )


def list_timed_out(
    session: Session,
    now: datetime,
    *,
    timeout: timedelta,
    limit: int,
) -> list[GenerationQueueEntry]:
    """Return released processing entries with no callback within the timeout.

    Release and progress callbacks both touch updated_at, so it marks the last
    sign of life for the attempt.
    """
    now = _normalize_timestamp(now, "now")
    return (
        session.query(GenerationQueueEntry)
        .filter(
            GenerationQueueEntry.status == "processing",
            GenerationQueueEntry.lease_holder.is_(None),
            GenerationQueueEntry.updated_at <= now - timeout,
        )
        .order_by(GenerationQueueEntry.updated_at.asc(), GenerationQueueEntry.id.asc())
        .limit(limit)
        .all()
    )


def acquire_lease(
    session: Session,
    entry_id: uuid.UUID,
    holder: str,
    *,
    now: datetime,
    ttl: timedelta,
) -> GenerationQueueEntry:
    """Claim an entry for one dispatcher with a compare-and-set on its lease.

    Succeeds only when the entry is pending or processing with no live lease.
    Raises LeaseConflict when another holder owns it or its state moved on.
    """
    now = _normalize_timestamp(now, "now")
    claimable = or_(
        and_(GenerationQueueEntry.status == "pending", _lease_available(now)),
        and_(
            GenerationQueueEntry.status == "processing",
            GenerationQueueEntry.lease_holder.is_not(None),
            GenerationQueueEntry.lease_expires_at < now,
        ),
    )
    updated = (
        session.query(GenerationQueueEntry)
        .filter(GenerationQueueEntry.id == entry_id, claimable)
        .update(
            {
                "status": "processing",
                "lease_holder": holder,
                "lease_expires_at": now + ttl,
                "attempt_count": GenerationQueueEntry.attempt_count + 1,
                "last_attempt_at": now,
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        raise LeaseConflict(
            f"Queue entry {entry_id} is not available for leasing.",
            details={"queue_entry_id": str(entry_id), "holder": holder},
        )
    entry = session.get(GenerationQueueEntry, entry_id, populate_existing=True)
    assert entry is not None
    return entry


def release_lease(
    session: Session,
    entry_id: uuid.UUID,
    holder: str,
    *,
    now: datetime,
) -> bool:
    """Drop a held lease while the entry stays processing awaiting callbacks."""
    now = _normalize_timestamp(now, "now")
    updated = (
        session.query(GenerationQueueEntry)
        .filter(
            GenerationQueueEntry.id == entry_id,
            GenerationQueueEntry.status == "processing",
            GenerationQueueEntry.lease_holder == holder,
        )
        .update(
            {"lease_holder": None, "lease_expires_at": None, "updated_at": now},
            synchronize_session=False,
        )
    )
    return updated == 1


def touch_processing_entry(session: Session, episode_id: uuid.UUID, *, now: datetime) -> bool:
    """Record a sign of life for an episode's in-flight attempt."""
    now = _normalize_timestamp(now, "now")
    updated = (
        session.query(GenerationQueueEntry)
        .filter(
            GenerationQueueEntry.episode_id == episode_id,
            GenerationQueueEntry.status == "processing",
        )
        .update({"updated_at": now}, synchronize_session=False)
    )
    return updated == 1


def finish_entry(
    session: Session,
    entry_id: uuid.UUID,
    status: str,
    *,
    now: datetime,
    holder: str | None = None,
    error_message: str | None = None,
) -> bool:
    """Move an active entry to a terminal status and clear its lease.

    When holder is given the update only applies while that holder owns the
    lease.
    """
    if status not in TERMINAL_QUEUE_STATUSES:
        raise ValueError(f"Queue status {status} is not terminal.")
    if status not in QueueStatusEnum.enums:
        raise ValueError(f"Invalid queue status: {status}.")
    now = _normalize_timestamp(now, "now")
    query = session.query(GenerationQueueEntry).filter(
        GenerationQueueEntry.id == entry_id,
        GenerationQueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
    )
    if holder is not None:
        query = query.filter(GenerationQueueEntry.lease_holder == holder)
    values: dict[str, object] = {
        "status": status,
        "lease_holder": None,
        "lease_expires_at": None,
        "next_retry_at": None,
        "completed_at": now,
        "updated_at": now,
    }
    if error_message is not None:
        values["error_message"] = error_message
    updated = query.update(values, synchronize_session=False)
    if updated == 1:
        logger.info("Queue entry %s finished as %s", entry_id, status)
    return updated == 1


def schedule_retry(
    session: Session,
    entry_id: uuid.UUID,
    *,
    next_retry_at: datetime,
    priority: int,
    error_message: str,
    now: datetime,
    holder: str | None = None,
) -> bool:
    """Return a processing entry to pending until its next retry checkpoint."""
    now = _normalize_timestamp(now, "now")
    query = session.query(GenerationQueueEntry).filter(
        GenerationQueueEntry.id == entry_id,
        GenerationQueueEntry.status == "processing",
    )
    if holder is not None:
        query = query.filter(GenerationQueueEntry.lease_holder == holder)
    updated = query.update(
        {
            "status": "pending",
            "lease_holder": None,
            "lease_expires_at": None,
            "next_retry_at": _normalize_timestamp(next_retry_at, "next_retry_at"),
            "priority": priority,
            "error_message": error_message,
            "updated_at": now,
        },
        synchronize_session=False,
    )
    return updated == 1


def delete_project_entries(session: Session, project_id: uuid.UUID) -> int:
    """Remove every queue entry for a project, including lease-held ones."""
    deleted = (
        session.query(GenerationQueueEntry)
        .filter(GenerationQueueEntry.project_id == project_id)
        .delete(synchronize_session=False)
    )
    if deleted:
        logger.info("Removed %s queue entries for project %s", deleted, project_id)
    return deleted


def delete_episode_entries(session: Session, episode_id: uuid.UUID) -> int:
    """Remove active queue entries for a cancelled episode."""
    return (
        session.query(GenerationQueueEntry)
        .filter(
            GenerationQueueEntry.episode_id == episode_id,
            GenerationQueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
        )
        .delete(synchronize_session=False)
    )


def count_active_entries(session: Session, episode_id: uuid.UUID) -> int:
    """Return the number of pending or processing entries for an episode."""
    return (
        session.query(GenerationQueueEntry)
        .filter(
            GenerationQueueEntry.episode_id == episode_id,
            GenerationQueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
        )
        .count()
    )
