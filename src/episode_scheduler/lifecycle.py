"""Project lifecycle handling: slot planning, pause, resume and reschedules."""

from __future__ import annotations

import logging
import uuid
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Callable, Iterable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from episode_scheduler import episode_store, queue
from episode_scheduler.cadence import cadence_for_project, validate_cadence, validate_timezone
from episode_scheduler.errors import InvalidTransition, NotFoundError
from episode_scheduler.schedule_calculator import default_lead_time, next_delivery
from models import TERMINAL_EPISODE_STATUSES, Episode, Organization, Project
from time_utils import ensure_utc

logger = logging.getLogger(__name__)


def require_project(session: Session, project_id: uuid.UUID) -> Project:
    """Return a project by id or raise NotFoundError."""
    project = session.get(Project, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.", details={"project_id": str(project_id)})
    return project


def plan_slot(session: Session, project: Project, delivery: datetime, *, now: datetime) -> Episode:
    """Ensure the DRAFT episode and its queue entry exist for a slot."""
    episode = episode_store.ensure_draft_episode(session, project.id, delivery, now=now)
    if episode.status == "DRAFT":
        organization = session.get(Organization, project.organization_id)
        tier = organization.subscription_tier if organization is not None else None
        queue.enqueue_episode(
            session,
            episode,
            priority=queue.compute_priority(tier),
            now=now,
        )
    return episode


def schedule_next_slot(
    session: Session,
    project: Project,
    *,
    after: datetime,
    now: datetime,
) -> Episode | None:
    """Advance a project to its next slot after a reference instant.

    The slot is computed from whichever of after and now is later, so a
    finished slot never reschedules into the past.
    """
    if project.is_paused:
        return None
    reference = max(ensure_utc(after), ensure_utc(now))
    delivery = next_delivery(cadence_for_project(project), project.timezone, reference)
    project.next_scheduled_at = delivery
    project.updated_at = now
    session.flush()
    episode = plan_slot(session, project, delivery, now=now)
    logger.info(
        "Project %s next slot scheduled for %s (episode %s)",
        project.id,
        delivery.isoformat(),
        episode.id,
    )
    return episode


def advance_schedule(session: Session, project: Project, *, now: datetime) -> Episode | None:
    """Make sure the project's current slot is planned, moving on once it is terminal."""
    if project.is_paused:
        return None
    if project.next_scheduled_at is None:
        return schedule_next_slot(session, project, after=now, now=now)

    slot = ensure_utc(project.next_scheduled_at)
    episode = episode_store.get_episode_for_slot(session, project.id, slot)
    if episode is None:
        if slot <= ensure_utc(now):
            logger.warning(
                "Project %s slot %s passed without an episode; skipping to the next slot.",
                project.id,
                slot.isoformat(),
            )
            return schedule_next_slot(session, project, after=now, now=now)
        return plan_slot(session, project, slot, now=now)
    if episode.status in TERMINAL_EPISODE_STATUSES:
        return schedule_next_slot(session, project, after=episode.scheduled_for, now=now)
    if episode.status == "DRAFT":
        return plan_slot(session, project, slot, now=now)
    return episode


def list_projects_due_for_planning(
    session: Session,
    *,
    now: datetime,
    lead: timedelta | None = None,
) -> list[uuid.UUID]:
    """Return active projects that are unscheduled or inside the lead window."""
    horizon = ensure_utc(now) + (lead if lead is not None else default_lead_time())
    rows = (
        session.query(Project.id)
        .filter(
            Project.is_paused.is_(False),
            or_(Project.next_scheduled_at.is_(None), Project.next_scheduled_at <= horizon),
        )
        .order_by(Project.id.asc())
        .all()
    )
    return [row[0] for row in rows]


def _cancel_episodes(
    session: Session,
    episodes: Iterable[Episode],
    *,
    now: datetime,
    reason: str,
) -> int:
    cancelled = 0
    for episode in episodes:
        queue.delete_episode_entries(session, episode.id)
        try:
            episode_store.cancel_episode(session, episode, now=now, reason=reason)
        except InvalidTransition as exc:
            logger.error("Skipping cancellation of episode %s: %s", episode.id, exc)
            continue
        cancelled += 1
    return cancelled


def pause_project(session: Session, project: Project, *, now: datetime) -> None:
    """Cancel open work for a project and clear its next slot."""
    if project.is_paused:
        return
    open_episodes = episode_store.list_project_episodes(
        session, project.id, statuses=("DRAFT", "GENERATING")
    )
    cancelled = _cancel_episodes(session, open_episodes, now=now, reason="project_paused")
    queue.delete_project_entries(session, project.id)
    project.is_paused = True
    project.next_scheduled_at = None
    project.updated_at = now
    session.flush()
    logger.info("Paused project %s; cancelled %s episodes", project.id, cancelled)


def resume_project(session: Session, project: Project, *, now: datetime) -> Episode | None:
    """Unpause a project and plan a fresh slot computed from now."""
    if not project.is_paused:
        return None
    project.is_paused = False
    project.updated_at = now
    return schedule_next_slot(session, project, after=now, now=now)


def reschedule_project(session: Session, project: Project, *, now: datetime, reason: str) -> None:
    """Replace the pending slot after a cadence or timezone change.

    An episode already generating is left to finish; the next slot is then
    computed with the new settings when it reaches a terminal status.
    """
    if project.is_paused:
        return
    in_flight = episode_store.list_project_episodes(session, project.id, statuses=("GENERATING",))
    if in_flight:
        logger.info(
            "Project %s has a generation in flight; %s applies from the next slot.",
            project.id,
            reason,
        )
        return
    drafts = episode_store.list_project_episodes(session, project.id, statuses=("DRAFT",))
    _cancel_episodes(session, drafts, now=now, reason=reason)
    schedule_next_slot(session, project, after=now, now=now)


def update_project_cadence(
    session: Session,
    project: Project,
    *,
    mode: str,
    days: Iterable[int] | None,
    delivery_hour: int,
    now: datetime,
) -> None:
    """Validate and store a new cadence, then reschedule."""
    cadence = validate_cadence(mode, days, delivery_hour)
    project.cadence_mode = cadence.mode
    project.cadence_days = sorted(cadence.days)
    project.delivery_hour = cadence.delivery_hour
    project.updated_at = now
    session.flush()
    reschedule_project(session, project, now=now, reason="cadence_changed")


def update_project_timezone(
    session: Session,
    project: Project,
    *,
    timezone_name: str,
    now: datetime,
) -> None:
    """Validate and store a new timezone, then reschedule."""
    zone = validate_timezone(timezone_name)
    project.timezone = zone.key
    project.updated_at = now
    session.flush()
    reschedule_project(session, project, now=now, reason="timezone_changed")


@dataclass(frozen=True)
class ProjectScheduleState:
    """Snapshot of a project's schedule after a lifecycle event."""

    project_id: uuid.UUID
    is_paused: bool
    timezone: str
    cadence: dict[str, object]
    next_scheduled_at: datetime | None
    draft_episode_id: uuid.UUID | None


class LifecycleController:
    """Applies project mutation events, each as one atomic transaction."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the controller with persistence and clock access."""
        self._session_factory = session_factory
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    def activate(self, project_id: uuid.UUID) -> ProjectScheduleState:
        """Plan the first slot for a project that has none yet."""
        return self._apply(project_id, advance_schedule)

    def pause(self, project_id: uuid.UUID) -> ProjectScheduleState:
        """Pause a project, cancelling its open episodes and queue entries."""
        return self._apply(project_id, pause_project)

    def resume(self, project_id: uuid.UUID) -> ProjectScheduleState:
        """Resume a paused project from the current time."""
        return self._apply(project_id, resume_project)

    def update_cadence(
        self,
        project_id: uuid.UUID,
        *,
        mode: str,
        days: Iterable[int] | None,
        delivery_hour: int,
    ) -> ProjectScheduleState:
        """Change a project's cadence and replace its pending slot."""
        days = list(days) if days is not None else None
        return self._apply(
            project_id,
            partial(update_project_cadence, mode=mode, days=days, delivery_hour=delivery_hour),
        )

    def update_timezone(self, project_id: uuid.UUID, timezone_name: str) -> ProjectScheduleState:
        """Change a project's timezone and replace its pending slot."""
        return self._apply(project_id, partial(update_project_timezone, timezone_name=timezone_name))

    def _apply(
        self,
        project_id: uuid.UUID,
        action: Callable[..., object],
    ) -> ProjectScheduleState:
        now = self._now_provider()
        with closing(self._session_factory()) as session:
            try:
                project = require_project(session, project_id)
                action(session, project, now=now)
                session.commit()
            except Exception:
                session.rollback()
                raise
            return _schedule_state(session, project)


def _schedule_state(session: Session, project: Project) -> ProjectScheduleState:
    draft = (
        session.query(Episode.id)
        .filter(Episode.project_id == project.id, Episode.status == "DRAFT")
        .order_by(Episode.scheduled_for.asc())
        .first()
    )
    return ProjectScheduleState(
        project_id=project.id,
        is_paused=project.is_paused,
        timezone=project.timezone,
        cadence={
            "mode": project.cadence_mode,
            "days": list(project.cadence_days or []),
            "delivery_hour": project.delivery_hour,
        },
        next_scheduled_at=project.next_scheduled_at,
        draft_episode_id=draft[0] if draft else None,
    )
