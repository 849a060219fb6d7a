"""Tick-driven dispatcher that leases queue entries and invokes the worker."""

from __future__ import annotations

import logging
import os
import socket
import uuid
from contextlib import closing
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Callable, TypeVar

from sqlalchemy.orm import Session

from config import settings
from episode_scheduler import (
    cost_guard,
    episode_store,
    lifecycle,
    planning_notes,
    queue,
    retry_planner,
)
from episode_scheduler.delivery import DeliveryNotifier, LoggingDeliveryNotifier, deliver_due_episodes
from episode_scheduler.errors import (
    CostLimitExceeded,
    InvalidTransition,
    LeaseConflict,
    WorkerUnreachable,
)
from episode_scheduler.retry_planner import RetryPolicy, resolve_retry_policy
from episode_scheduler.worker_client import (
    CallbackUrls,
    GenerationContext,
    GenerationRequest,
    GenerationWorker,
)
from models import Episode, Project
from structured_logging import fields, log_context
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DISPATCHABLE_STATUSES = ("DRAFT", "GENERATING")


def default_holder_id() -> str:
    """Return a lease holder id unique to this dispatcher process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class TickSummary:
    """Counters describing what one tick did."""

    planned: int = 0
    expired: int = 0
    timed_out: int = 0
    dispatched: int = 0
    blocked: int = 0
    conflicts: int = 0
    unreachable: int = 0
    abandoned: int = 0
    stale: int = 0
    delivered: int = 0
    errors: int = 0

    def record(self, status: str) -> None:
        """Count one dispatch outcome."""
        counter = {
            "dispatched": "dispatched",
            "blocked": "blocked",
            "conflict": "conflicts",
            "unreachable": "unreachable",
            "abandoned": "abandoned",
            "stale": "stale",
            "expired": "expired",
        }.get(status, "errors")
        setattr(self, counter, getattr(self, counter) + 1)

    def as_dict(self) -> dict[str, int]:
        """Return the counters as a plain mapping."""
        return asdict(self)


@dataclass(frozen=True)
class DispatchOutcome:
    """Outcome of dispatching one queue entry."""

    status: str
    queue_entry_id: uuid.UUID
    episode_id: uuid.UUID | None = None
    request: GenerationRequest | None = None


class GenerationDispatcher:
    """Plans due slots, leases queue entries and hands episodes to the worker."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        worker: GenerationWorker,
        *,
        holder_id: str | None = None,
        notifier: DeliveryNotifier | None = None,
        retry_policy: RetryPolicy | None = None,
        lease_ttl: timedelta | None = None,
        generation_timeout: timedelta | None = None,
        batch_size: int | None = None,
        callback_base_url: str | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the dispatcher with persistence, worker and policy settings."""
        scheduler_config = settings.scheduler
        self._session_factory = session_factory
        self._worker = worker
        self._holder_id = holder_id or default_holder_id()
        self._notifier = notifier or LoggingDeliveryNotifier()
        self._retry_policy = resolve_retry_policy(retry_policy)
        self._lease_ttl = lease_ttl or timedelta(seconds=scheduler_config.lease_ttl_seconds)
        self._generation_timeout = generation_timeout or timedelta(
            minutes=scheduler_config.generation_timeout_minutes
        )
        self._batch_size = batch_size or scheduler_config.dispatch_batch_size
        self._callback_base_url = callback_base_url
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    @property
    def holder_id(self) -> str:
        """Return the lease holder id used by this dispatcher."""
        return self._holder_id

    def run_tick(self, now: datetime | None = None) -> TickSummary:
        """Run one scheduling pass: plan, expire, time out, dispatch, deliver."""
        now = ensure_utc(now or self._now_provider())
        summary = TickSummary()
        with log_context({fields.TICK_ID: uuid.uuid4().hex, fields.LEASE_HOLDER: self._holder_id}):
            self._plan_due_projects(now, summary)
            self._expire_overdue(now, summary)
            self._reclaim_timed_out(now, summary)
            for entry_id in self._read(partial(self._dispatchable_ids, now=now)):
                try:
                    outcome = self.dispatch_entry(entry_id, now=now)
                except Exception:
                    logger.exception("Failed to dispatch queue entry %s", entry_id)
                    summary.errors += 1
                    continue
                summary.record(outcome.status)
            summary.delivered = deliver_due_episodes(
                self._session_factory,
                self._notifier,
                now=now,
                limit=self._batch_size,
            )
            logger.info("Tick completed: %s", summary.as_dict())
        return summary

    def dispatch_entry(self, entry_id: uuid.UUID, *, now: datetime) -> DispatchOutcome:
        """Lease one queue entry, apply the cost guard and invoke the worker."""
        now = ensure_utc(now)
        with log_context({fields.QUEUE_ENTRY_ID: entry_id}):
            try:
                self._transaction(
                    partial(
                        queue.acquire_lease,
                        entry_id=entry_id,
                        holder=self._holder_id,
                        now=now,
                        ttl=self._lease_ttl,
                    )
                )
            except LeaseConflict:
                logger.debug("Queue entry %s is leased elsewhere; skipping", entry_id)
                return DispatchOutcome(status="conflict", queue_entry_id=entry_id)

            try:
                prepared = self._transaction(partial(self._prepare, entry_id=entry_id, now=now))
            except InvalidTransition as exc:
                logger.error("Dispatch of queue entry %s aborted: %s", entry_id, exc)
                self._transaction(
                    partial(
                        queue.finish_entry,
                        entry_id=entry_id,
                        status="cancelled",
                        now=now,
                        holder=self._holder_id,
                    )
                )
                return DispatchOutcome(status="stale", queue_entry_id=entry_id)

            if prepared.request is None:
                return prepared

            with log_context({fields.EPISODE_ID: prepared.episode_id}):
                try:
                    self._worker.invoke(prepared.request)
                except WorkerUnreachable as exc:
                    return self._handle_unreachable(prepared, exc, now)
                except Exception as exc:
                    logger.exception("Generation worker invocation raised unexpectedly")
                    return self._handle_unreachable(
                        prepared,
                        WorkerUnreachable(f"Worker invocation failed: {exc}"),
                        now,
                    )

                released = self._transaction(
                    partial(
                        queue.release_lease,
                        entry_id=entry_id,
                        holder=self._holder_id,
                        now=now,
                    )
                )
                if not released:
                    logger.info(
                        "Lease on queue entry %s was already cleared; callbacks own it now",
                        entry_id,
                    )
            return DispatchOutcome(
                status="dispatched",
                queue_entry_id=entry_id,
                episode_id=prepared.episode_id,
                request=prepared.request,
            )

    def _prepare(self, session: Session, *, entry_id: uuid.UUID, now: datetime) -> DispatchOutcome:
        """Apply the pre-dispatch checks and start the attempt for a leased entry."""
        entry = queue.get_entry(session, entry_id)
        if entry is None or entry.lease_holder != self._holder_id:
            logger.warning("Queue entry %s was removed or re-leased before dispatch", entry_id)
            return DispatchOutcome(status="abandoned", queue_entry_id=entry_id)

        episode = session.get(Episode, entry.episode_id) if entry.episode_id else None
        if episode is None or episode.status not in _DISPATCHABLE_STATUSES:
            queue.finish_entry(session, entry.id, "cancelled", now=now, holder=self._holder_id)
            return DispatchOutcome(status="stale", queue_entry_id=entry_id)

        if entry.target_delivery_time <= now:
            retry_planner.finalize_failure(
                session,
                episode,
                entry.id,
                reason="delivery_window_missed",
                message="Delivery instant passed before generation could start.",
                queue_status="failed",
                now=now,
                holder=self._holder_id,
            )
            return DispatchOutcome(status="expired", queue_entry_id=entry_id, episode_id=episode.id)

        decision = cost_guard.check_daily_limit(session, episode.organization_id, now=now)
        if not decision.allowed:
            error = CostLimitExceeded(
                f"Organization {decision.organization_id} reached its daily cost limit "
                f"({decision.total_cost} >= {decision.daily_limit}).",
                details={
                    "organization_id": str(decision.organization_id),
                    "total_cost": str(decision.total_cost),
                    "daily_limit": str(decision.daily_limit),
                },
            )
            logger.warning("Episode %s blocked: %s", episode.id, error.message)
            retry_planner.finalize_failure(
                session,
                episode,
                entry.id,
                reason=error.code,
                message=error.message,
                queue_status="blocked",
                now=now,
                holder=self._holder_id,
            )
            return DispatchOutcome(status="blocked", queue_entry_id=entry_id, episode_id=episode.id)

        if episode.status == "DRAFT":
            episode = episode_store.transition(
                session,
                episode.id,
                "DRAFT",
                "GENERATING",
                {
                    "generation_started_at": now,
                    "generation_attempts": episode.generation_attempts + 1,
                    "progress": None,
                },
                now=now,
                reason="dispatch",
            )
        else:
            episode = retry_planner.reenter_generating(session, episode.id, now=now)

        return DispatchOutcome(
            status="ready",
            queue_entry_id=entry_id,
            episode_id=episode.id,
            request=self._build_request(session, episode),
        )

    def _build_request(self, session: Session, episode: Episode) -> GenerationRequest:
        project = session.get(Project, episode.project_id)
        assert project is not None
        notes = planning_notes.list_pending_notes(session, project.id)
        # Completion acknowledges exactly the notes this attempt carried.
        episode.dispatched_note_ids = [str(note.id) for note in notes]
        session.flush()
        return GenerationRequest(
            episode_id=episode.id,
            project_id=project.id,
            organization_id=episode.organization_id,
            attempt=episode.generation_attempts,
            context=GenerationContext(
                brief=dict(project.brief or {}),
                prior_memory=list(project.memories or []),
                pending_planning_notes=[note.note for note in notes],
            ),
            callbacks=CallbackUrls.for_episode(episode.id, self._callback_base_url),
        )

    def _handle_unreachable(
        self,
        prepared: DispatchOutcome,
        error: WorkerUnreachable,
        now: datetime,
    ) -> DispatchOutcome:
        logger.warning("Generation worker unreachable: %s", error.message)
        decision = self._transaction(
            partial(
                retry_planner.handle_generation_failure,
                episode_id=prepared.episode_id,
                error=error,
                now=now,
                stage="dispatch",
                policy=self._retry_policy,
                lease_holder=self._holder_id,
            )
        )
        status = "abandoned" if decision.outcome == "abandoned" else "unreachable"
        return DispatchOutcome(
            status=status,
            queue_entry_id=prepared.queue_entry_id,
            episode_id=prepared.episode_id,
        )

    def _plan_due_projects(self, now: datetime, summary: TickSummary) -> None:
        project_ids = self._read(partial(lifecycle.list_projects_due_for_planning, now=now))
        for project_id in project_ids:
            with log_context({fields.PROJECT_ID: project_id}):
                try:
                    self._transaction(partial(self._advance_project, project_id=project_id, now=now))
                except Exception:
                    logger.exception("Failed to plan the next slot for project %s", project_id)
                    summary.errors += 1
                    continue
                summary.planned += 1

    def _advance_project(self, session: Session, *, project_id: uuid.UUID, now: datetime) -> None:
        project = session.get(Project, project_id)
        if project is not None:
            lifecycle.advance_schedule(session, project, now=now)

    def _expire_overdue(self, now: datetime, summary: TickSummary) -> None:
        entry_ids = self._read(
            lambda session: [
                entry.id for entry in queue.list_overdue(session, now, limit=self._batch_size)
            ]
        )
        for entry_id in entry_ids:
            with log_context({fields.QUEUE_ENTRY_ID: entry_id}):
                try:
                    self._transaction(
                        partial(
                            queue.acquire_lease,
                            entry_id=entry_id,
                            holder=self._holder_id,
                            now=now,
                            ttl=self._lease_ttl,
                        )
                    )
                    outcome = self._transaction(partial(self._prepare, entry_id=entry_id, now=now))
                except LeaseConflict:
                    summary.conflicts += 1
                    continue
                except Exception:
                    logger.exception("Failed to expire overdue queue entry %s", entry_id)
                    summary.errors += 1
                    continue
                summary.record(outcome.status)

    def _reclaim_timed_out(self, now: datetime, summary: TickSummary) -> None:
        entry_ids = self._read(
            lambda session: [
                entry.id
                for entry in queue.list_timed_out(
                    session,
                    now,
                    timeout=self._generation_timeout,
                    limit=self._batch_size,
                )
            ]
        )
        for entry_id in entry_ids:
            with log_context({fields.QUEUE_ENTRY_ID: entry_id}):
                try:
                    outcome = self._transaction(
                        partial(self._time_out_entry, entry_id=entry_id, now=now)
                    )
                except Exception:
                    logger.exception("Failed to time out queue entry %s", entry_id)
                    summary.errors += 1
                    continue
                if outcome in {"retry_scheduled", "failed"}:
                    summary.timed_out += 1
                elif outcome == "stale":
                    summary.stale += 1

    def _time_out_entry(self, session: Session, *, entry_id: uuid.UUID, now: datetime) -> str:
        entry = queue.get_entry(session, entry_id)
        if entry is None:
            return "ignored"
        episode = session.get(Episode, entry.episode_id) if entry.episode_id else None
        if episode is None or episode.status != "GENERATING":
            queue.finish_entry(session, entry.id, "cancelled", now=now)
            return "stale"
        error = WorkerUnreachable(
            f"No callback received within {self._generation_timeout} of dispatch.",
            details={"queue_entry_id": str(entry.id)},
        )
        decision = retry_planner.handle_generation_failure(
            session,
            episode.id,
            error=error,
            now=now,
            stage="timeout",
            policy=self._retry_policy,
        )
        return decision.outcome

    def _dispatchable_ids(self, session: Session, *, now: datetime) -> list[uuid.UUID]:
        return [entry.id for entry in queue.list_dispatchable(session, now, limit=self._batch_size)]

    def _read(self, work: Callable[[Session], T]) -> T:
        with closing(self._session_factory()) as session:
            return work(session)

    def _transaction(self, work: Callable[[Session], T]) -> T:
        with closing(self._session_factory()) as session:
            try:
                result = work(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
            return result
