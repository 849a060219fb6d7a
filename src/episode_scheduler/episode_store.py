"""Episode persistence with idempotent creation and guarded status transitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from episode_scheduler.errors import InvalidTransition, NotFoundError
from models import Episode, EpisodeAuditLog, EpisodeStatusEnum, Project
from time_utils import ensure_utc, truncate_to_minute

logger = logging.getLogger(__name__)

RETRY_REASON = "retry"

ALLOWED_TRANSITIONS = frozenset(
    {
        ("DRAFT", "GENERATING"),
        ("DRAFT", "CANCELLED"),
        ("DRAFT", "FAILED"),
        ("GENERATING", "GENERATING"),
        ("GENERATING", "PUBLISHED"),
        ("GENERATING", "FAILED"),
        ("GENERATING", "CANCELLED"),
    }
)


def _normalize_timestamp(value: datetime, label: str) -> datetime:
    """Ensure timestamps are timezone-aware UTC, defaulting to UTC if naive."""
    if value.tzinfo is None:
        logger.warning("Naive timestamp provided for %s; assuming UTC.", label)
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def idempotency_key(project_id: uuid.UUID, delivery: datetime) -> str:
    """Return the deterministic slot key for a project and delivery instant."""
    slot = truncate_to_minute(ensure_utc(delivery))
    return f"{project_id}:{slot.strftime('%Y-%m-%dT%H:%MZ')}"


def get_episode(session: Session, episode_id: uuid.UUID) -> Episode | None:
    """Return an episode by id."""
    return session.get(Episode, episode_id)


def require_episode(session: Session, episode_id: uuid.UUID) -> Episode:
    """Return an episode by id or raise NotFoundError."""
    episode = get_episode(session, episode_id)
    if episode is None:
        raise NotFoundError(f"Episode {episode_id} not found.", details={"episode_id": str(episode_id)})
    return episode


def get_episode_for_slot(
    session: Session,
    project_id: uuid.UUID,
    delivery: datetime,
) -> Episode | None:
    """Return the episode holding the slot key for a delivery instant."""
    return _find_by_key(session, project_id, idempotency_key(project_id, delivery))


def list_project_episodes(
    session: Session,
    project_id: uuid.UUID,
    statuses: Iterable[str] | None = None,
) -> list[Episode]:
    """Return a project's episodes ordered by delivery slot."""
    query = session.query(Episode).filter(Episode.project_id == project_id)
    if statuses is not None:
        query = query.filter(Episode.status.in_(tuple(statuses)))
    return query.order_by(Episode.scheduled_for.asc(), Episode.id.asc()).all()


def ensure_draft_episode(
    session: Session,
    project_id: uuid.UUID,
    delivery: datetime,
    *,
    now: datetime,
) -> Episode:
    """Return the episode for a delivery slot, creating a DRAFT if none exists.

    Safe to call repeatedly and from concurrent processes: the unique
    (project_id, idempotency_key) constraint decides the winner and losers
    re-read the row it created.
    """
    slot = truncate_to_minute(_normalize_timestamp(delivery, "delivery"))
    key = idempotency_key(project_id, slot)
    existing = _find_by_key(session, project_id, key)
    if existing is not None:
        return existing

    project = session.get(Project, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.", details={"project_id": str(project_id)})

    timestamp = _normalize_timestamp(now, "created_at")
    episode = Episode(
        project_id=project_id,
        organization_id=project.organization_id,
        idempotency_key=key,
        status="DRAFT",
        episode_number=_next_episode_number(session, project_id),
        scheduled_for=slot,
        generation_attempts=0,
        generation_errors=[],
        created_at=timestamp,
        updated_at=timestamp,
    )
    try:
        with session.begin_nested():
            session.add(episode)
            session.flush()
    except IntegrityError:
        existing = _find_by_key(session, project_id, key)
        if existing is None:
            raise
        logger.info("Episode for slot %s was created concurrently; reusing it.", key)
        return existing

    logger.info(
        "Created DRAFT episode %s for project %s scheduled_for=%s",
        episode.id,
        project_id,
        slot.isoformat(),
    )
    return episode


def transition(
    session: Session,
    episode_id: uuid.UUID,
    from_status: str,
    to_status: str,
    fields: dict[str, object] | None = None,
    *,
    now: datetime,
    reason: str | None = None,
) -> Episode:
    """Move an episode between statuses, guarded on its current status.

    The update only applies when the stored status still equals from_status,
    so a concurrent writer that got there first makes this call fail with
    InvalidTransition instead of being overwritten.
    """
    for status in (from_status, to_status):
        if status not in EpisodeStatusEnum.enums:
            raise ValueError(f"Invalid episode status: {status}.")
    edge_allowed = (from_status, to_status) in ALLOWED_TRANSITIONS
    if from_status == to_status and reason != RETRY_REASON:
        edge_allowed = False
    if not edge_allowed:
        raise InvalidTransition(episode_id, from_status, to_status, _current_status(session, episode_id))

    timestamp = _normalize_timestamp(now, "updated_at")
    values: dict[str, object] = dict(fields or {})
    values["status"] = to_status
    values["updated_at"] = timestamp
    updated = (
        session.query(Episode)
        .filter(Episode.id == episode_id, Episode.status == from_status)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        raise InvalidTransition(episode_id, from_status, to_status, _current_status(session, episode_id))

    episode = session.get(Episode, episode_id, populate_existing=True)
    assert episode is not None
    session.add(
        EpisodeAuditLog(
            episode_id=episode.id,
            project_id=episode.project_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            occurred_at=timestamp,
        )
    )
    session.flush()
    logger.info(
        "Episode %s transitioned %s -> %s reason=%s",
        episode_id,
        from_status,
        to_status,
        reason,
    )
    return episode


def cancel_episode(
    session: Session,
    episode: Episode,
    *,
    now: datetime,
    reason: str,
) -> Episode:
    """Cancel a DRAFT or GENERATING episode and free its slot key."""
    return transition(
        session,
        episode.id,
        episode.status,
        "CANCELLED",
        {
            "idempotency_key": f"{episode.idempotency_key}#cancelled:{episode.id.hex}",
            "status_reason": reason,
            "progress": None,
        },
        now=now,
        reason=reason,
    )


def error_entry(
    *,
    message: str,
    attempt: int,
    now: datetime,
    stage: str | None = None,
) -> dict[str, object]:
    """Build one generation error record."""
    return {
        "timestamp": _normalize_timestamp(now, "error_timestamp").isoformat(),
        "message": message,
        "attempt": attempt,
        "stage": stage,
    }


def errors_with(episode: Episode, entry: dict[str, object]) -> list[dict[str, object]]:
    """Return a new error list with an entry appended."""
    return [*(episode.generation_errors or []), entry]


def append_generation_error(
    session: Session,
    episode: Episode,
    *,
    message: str,
    now: datetime,
    stage: str | None = None,
) -> Episode:
    """Record a generation error on an episode without changing its status."""
    entry = error_entry(
        message=message,
        attempt=episode.generation_attempts,
        now=now,
        stage=stage,
    )
    episode.generation_errors = errors_with(episode, entry)
    episode.updated_at = _normalize_timestamp(now, "updated_at")
    session.flush()
    return episode


def _find_by_key(session: Session, project_id: uuid.UUID, key: str) -> Episode | None:
    return (
        session.query(Episode)
        .filter(Episode.project_id == project_id, Episode.idempotency_key == key)
        .first()
    )


def _next_episode_number(session: Session, project_id: uuid.UUID) -> int:
    current = (
        session.query(func.max(Episode.episode_number))
        .filter(Episode.project_id == project_id)
        .scalar()
    )
    return int(current or 0) + 1


def _current_status(session: Session, episode_id: uuid.UUID) -> str | None:
    return session.query(Episode.status).filter(Episode.id == episode_id).scalar()
