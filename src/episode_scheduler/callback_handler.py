"""Handlers for progress, completion and error callbacks from the worker."""

from __future__ import annotations

import logging
import uuid
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy.orm import Session

from episode_scheduler import (
    cost_guard,
    episode_store,
    lifecycle,
    planning_notes,
    queue,
    retry_planner,
)
from episode_scheduler.delivery import (
    DeliveryNotifier,
    LoggingDeliveryNotifier,
    deliver_episode,
    is_late,
)
from episode_scheduler.errors import InvalidTransition, WorkerReportedError
from episode_scheduler.retry_planner import RetryPolicy, resolve_retry_policy
from models import Episode, Project
from structured_logging import fields, log_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    """Intermediate progress reported by the worker."""

    stage: str
    percent: int | None = None
    message: str | None = None


@dataclass(frozen=True)
class CompletionReport:
    """Generated episode content reported by the worker."""

    content: str
    sources: list[Any] = field(default_factory=list)
    cost_reported: Decimal | float | None = None
    title: str | None = None
    reading_minutes: int | None = None


@dataclass(frozen=True)
class ErrorReport:
    """Generation error reported by the worker."""

    message: str
    stage: str | None = None


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of one callback: applied, duplicate or ignored."""

    outcome: str
    episode_id: uuid.UUID
    detail: str | None = None


class CallbackHandler:
    """Applies worker callbacks to episodes, the queue and the cost ledger."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        notifier: DeliveryNotifier | None = None,
        retry_policy: RetryPolicy | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the handler with persistence, delivery and clock access."""
        self._session_factory = session_factory
        self._notifier = notifier or LoggingDeliveryNotifier()
        self._retry_policy = resolve_retry_policy(retry_policy)
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    def handle_progress(self, episode_id: uuid.UUID, update: ProgressUpdate) -> CallbackResult:
        """Store worker progress while the episode is generating."""
        now = self._now_provider()
        with log_context(
            {fields.EPISODE_ID: episode_id, fields.CALLBACK: "progress", fields.STAGE: update.stage}
        ):
            applied = self._transaction(
                lambda session: self._apply_progress(session, episode_id, update, now)
            )
            if not applied:
                logger.info("Ignoring progress for episode %s that is not generating", episode_id)
                return CallbackResult(outcome="ignored", episode_id=episode_id)
            logger.debug("Progress for episode %s: %s %s%%", episode_id, update.stage, update.percent)
            return CallbackResult(outcome="applied", episode_id=episode_id)

    def handle_complete(self, episode_id: uuid.UUID, report: CompletionReport) -> CallbackResult:
        """Publish a generated episode and move its project to the next slot.

        Repeated completion callbacks for a published episode are no-ops, so
        the subscriber is notified at most once.
        """
        now = self._now_provider()
        with log_context({fields.EPISODE_ID: episode_id, fields.CALLBACK: "complete"}):
            result, late = self._transaction(
                lambda session: self._apply_complete(session, episode_id, report, now)
            )
            if result.outcome == "applied" and late:
                logger.warning("Episode %s finished after its delivery instant", episode_id)
                deliver_episode(self._session_factory, self._notifier, episode_id, now=now, late=True)
            return result

    def handle_error(self, episode_id: uuid.UUID, report: ErrorReport) -> CallbackResult:
        """Route a worker-reported error through the retry planner."""
        now = self._now_provider()
        with log_context(
            {fields.EPISODE_ID: episode_id, fields.CALLBACK: "error", fields.STAGE: report.stage}
        ):
            error = WorkerReportedError(report.message, details={"stage": report.stage})

            def apply(session: Session) -> retry_planner.RetryDecision:
                episode_store.require_episode(session, episode_id)
                return retry_planner.handle_generation_failure(
                    session,
                    episode_id,
                    error=error,
                    now=now,
                    stage=report.stage,
                    policy=self._retry_policy,
                )

            decision = self._transaction(apply)
            if decision.outcome in {"retry_scheduled", "failed"}:
                return CallbackResult(outcome="applied", episode_id=episode_id, detail=decision.outcome)
            return CallbackResult(outcome="ignored", episode_id=episode_id)

    def _apply_progress(
        self,
        session: Session,
        episode_id: uuid.UUID,
        update: ProgressUpdate,
        now: datetime,
    ) -> bool:
        episode_store.require_episode(session, episode_id)
        progress = {
            "stage": update.stage,
            "percent": update.percent,
            "message": update.message,
            "updated_at": now.isoformat(),
        }
        updated = (
            session.query(Episode)
            .filter(Episode.id == episode_id, Episode.status == "GENERATING")
            .update({"progress": progress, "updated_at": now}, synchronize_session=False)
        )
        if updated != 1:
            return False
        queue.touch_processing_entry(session, episode_id, now=now)
        return True

    def _apply_complete(
        self,
        session: Session,
        episode_id: uuid.UUID,
        report: CompletionReport,
        now: datetime,
    ) -> tuple[CallbackResult, bool]:
        episode = episode_store.require_episode(session, episode_id)
        if episode.status == "PUBLISHED":
            logger.info("Duplicate completion for published episode %s", episode_id)
            return CallbackResult(outcome="duplicate", episode_id=episode_id), False
        if episode.status != "GENERATING":
            logger.info("Ignoring completion for episode %s in status %s", episode_id, episode.status)
            return CallbackResult(outcome="ignored", episode_id=episode_id, detail=episode.status), False

        cost = Decimal(str(report.cost_reported)) if report.cost_reported is not None else None
        try:
            published = episode_store.transition(
                session,
                episode.id,
                "GENERATING",
                "PUBLISHED",
                {
                    "published_at": now,
                    "content": report.content,
                    "sources": list(report.sources or []),
                    "title": report.title,
                    "reading_minutes": report.reading_minutes,
                    "cost_reported": cost,
                    "progress": None,
                    "status_reason": None,
                },
                now=now,
                reason="generation_complete",
            )
        except InvalidTransition as exc:
            if exc.current_status == "PUBLISHED":
                return CallbackResult(outcome="duplicate", episode_id=episode_id), False
            logger.error("Completion for episode %s lost a status race: %s", episode_id, exc)
            return CallbackResult(outcome="ignored", episode_id=episode_id, detail=exc.current_status), False

        entry = queue.get_active_entry(session, published.id)
        if entry is not None:
            queue.finish_entry(session, entry.id, "completed", now=now)
        planning_notes.acknowledge_notes(
            session,
            published.project_id,
            published.id,
            published.dispatched_note_ids or [],
            now=now,
        )
        if cost is not None:
            cost_guard.record_generation_cost(
                session,
                published.organization_id,
                published.id,
                cost,
                now=now,
            )
        project = session.get(Project, published.project_id)
        if project is not None:
            lifecycle.schedule_next_slot(session, project, after=published.scheduled_for, now=now)
        logger.info(
            "Episode %s published after %s attempts",
            published.id,
            published.generation_attempts,
        )
        return CallbackResult(outcome="applied", episode_id=episode_id), is_late(published)

    def _transaction(self, work: Callable[[Session], Any]) -> Any:
        with closing(self._session_factory()) as session:
            try:
                result = work(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
            return result
