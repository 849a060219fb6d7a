"""Deadline-anchored retry planning and failure finalization for episodes."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from config import settings
from episode_scheduler import episode_store, lifecycle, planning_notes, queue
from episode_scheduler.errors import EpisodeSchedulerError, LeaseConflict
from models import Episode, Organization, Project
from time_utils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry checkpoints expressed as offsets before the delivery instant."""

    checkpoint_offsets: tuple[timedelta, ...]

    @staticmethod
    def from_settings() -> "RetryPolicy":
        """Build a retry policy from scheduler settings."""
        return RetryPolicy.from_minutes(settings.scheduler.retry_checkpoint_minutes)

    @staticmethod
    def from_minutes(minutes: list[int] | tuple[int, ...]) -> "RetryPolicy":
        """Build a retry policy from minutes-before-delivery offsets."""
        return RetryPolicy(
            checkpoint_offsets=tuple(timedelta(minutes=int(value)) for value in minutes)
        )


def resolve_retry_policy(policy: RetryPolicy | None) -> RetryPolicy:
    """Return a validated retry policy, defaulting to settings when unset."""
    resolved = policy or RetryPolicy.from_settings()
    _validate_policy(resolved)
    return resolved


def retry_checkpoints(delivery: datetime, policy: RetryPolicy) -> list[datetime]:
    """Return the retry instants for a delivery, earliest first."""
    target = ensure_utc(delivery)
    return sorted(target - offset for offset in policy.checkpoint_offsets)


def next_retry_at(delivery: datetime, now: datetime, policy: RetryPolicy) -> datetime | None:
    """Return the first checkpoint strictly after now, or None when none remain."""
    reference = ensure_utc(now)
    for checkpoint in retry_checkpoints(delivery, policy):
        if checkpoint > reference:
            return checkpoint
    return None


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of routing a generation failure through the planner.

    outcome is one of retry_scheduled, failed, ignored or abandoned.
    """

    outcome: str
    episode_id: uuid.UUID
    next_retry_at: datetime | None = None
    next_episode_id: uuid.UUID | None = None


def handle_generation_failure(
    session: Session,
    episode_id: uuid.UUID,
    *,
    error: EpisodeSchedulerError,
    now: datetime,
    stage: str | None = None,
    policy: RetryPolicy | None = None,
    lease_holder: str | None = None,
) -> RetryDecision:
    """Schedule the next checkpoint retry or finalize the episode as FAILED.

    Only an episode that is GENERATING with a processing queue entry is
    affected; anything else is a duplicate or late report and is ignored.
    When lease_holder is given the caller must still own the entry's lease.
    """
    resolved = resolve_retry_policy(policy)
    episode = session.get(Episode, episode_id)
    if episode is None or episode.status != "GENERATING":
        logger.info(
            "Ignoring generation failure for episode %s in status %s",
            episode_id,
            episode.status if episode is not None else None,
        )
        return RetryDecision(outcome="ignored", episode_id=episode_id)

    entry = queue.get_active_entry(session, episode.id)
    if entry is None or entry.status != "processing":
        logger.info("Ignoring generation failure for episode %s with no attempt in flight", episode_id)
        return RetryDecision(outcome="ignored", episode_id=episode_id)
    if lease_holder is not None and entry.lease_holder != lease_holder:
        logger.warning(
            "Lease on queue entry %s is no longer held by %s; abandoning failure handling",
            entry.id,
            lease_holder,
        )
        return RetryDecision(outcome="abandoned", episode_id=episode_id)

    retry_at = next_retry_at(entry.target_delivery_time, now, resolved)
    if retry_at is not None:
        organization = session.get(Organization, episode.organization_id)
        tier = organization.subscription_tier if organization is not None else None
        rescheduled = queue.schedule_retry(
            session,
            entry.id,
            next_retry_at=retry_at,
            priority=queue.compute_priority(tier, entry.attempt_count),
            error_message=error.message,
            now=now,
            holder=lease_holder,
        )
        if not rescheduled:
            return RetryDecision(outcome="ignored", episode_id=episode_id)
        episode_store.append_generation_error(
            session,
            episode,
            message=error.message,
            now=now,
            stage=stage,
        )
        logger.warning(
            "Generation attempt %s for episode %s failed (%s: %s); retrying at %s",
            episode.generation_attempts,
            episode.id,
            error.code,
            error.message,
            retry_at.isoformat(),
        )
        return RetryDecision(outcome="retry_scheduled", episode_id=episode.id, next_retry_at=retry_at)

    try:
        next_episode = finalize_failure(
            session,
            episode,
            entry.id,
            reason="retries_exhausted",
            message=error.message,
            stage=stage,
            queue_status="failed",
            now=now,
            holder=lease_holder,
        )
    except LeaseConflict:
        return RetryDecision(outcome="ignored", episode_id=episode_id)
    return RetryDecision(
        outcome="failed",
        episode_id=episode.id,
        next_episode_id=next_episode.id if next_episode is not None else None,
    )


def finalize_failure(
    session: Session,
    episode: Episode,
    entry_id: uuid.UUID,
    *,
    reason: str,
    message: str,
    queue_status: str,
    now: datetime,
    stage: str | None = None,
    holder: str | None = None,
) -> Episode | None:
    """Fail an episode for its slot and move the project on to the next slot.

    Returns the next slot's episode, or None when the project is paused.
    Raises LeaseConflict when the queue entry is no longer active or held.
    """
    if not queue.finish_entry(
        session,
        entry_id,
        queue_status,
        now=now,
        holder=holder,
        error_message=message,
    ):
        raise LeaseConflict(
            f"Queue entry {entry_id} is no longer active for this dispatcher.",
            details={"queue_entry_id": str(entry_id), "holder": holder},
        )
    entry = episode_store.error_entry(
        message=message,
        attempt=episode.generation_attempts,
        now=now,
        stage=stage,
    )
    failed = episode_store.transition(
        session,
        episode.id,
        episode.status,
        "FAILED",
        {
            "status_reason": reason,
            "generation_errors": episode_store.errors_with(episode, entry),
            "progress": None,
        },
        now=now,
        reason=reason,
    )
    planning_notes.roll_forward_notes(session, failed.project_id, failed.id, now=now)
    logger.warning(
        "Episode %s failed for slot %s: %s",
        failed.id,
        failed.scheduled_for.isoformat(),
        reason,
    )
    project = session.get(Project, failed.project_id)
    if project is None:
        return None
    return lifecycle.schedule_next_slot(session, project, after=failed.scheduled_for, now=now)


def reenter_generating(session: Session, episode_id: uuid.UUID, *, now: datetime) -> Episode:
    """Start another generation attempt for an episode that is awaiting retry."""
    episode = episode_store.require_episode(session, episode_id)
    return episode_store.transition(
        session,
        episode.id,
        "GENERATING",
        "GENERATING",
        {"generation_attempts": episode.generation_attempts + 1, "progress": None},
        now=now,
        reason=episode_store.RETRY_REASON,
    )


def _validate_policy(policy: RetryPolicy) -> None:
    """Validate retry policy settings."""
    for offset in policy.checkpoint_offsets:
        if offset <= timedelta(0):
            raise ValueError("retry checkpoints must fall strictly before delivery.")
    if len(set(policy.checkpoint_offsets)) != len(policy.checkpoint_offsets):
        raise ValueError("retry checkpoints must be unique.")
