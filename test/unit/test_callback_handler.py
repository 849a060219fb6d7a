"""Unit tests for worker callback handling."""

from __future__ import annotations

import uuid
from contextlib import closing
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from episode_scheduler import episode_store, lifecycle, planning_notes, queue
from episode_scheduler.callback_handler import (
    CallbackHandler,
    CompletionReport,
    ErrorReport,
    ProgressUpdate,
)
from episode_scheduler.delivery import DeliveredEpisode
from episode_scheduler.errors import NotFoundError
from episode_scheduler.retry_planner import RetryPolicy
from models import DailyCostLedger, Episode, GenerationQueueEntry, PlanningNote

DELIVERY = datetime(2025, 2, 3, 9, 0, tzinfo=timezone.utc)
DISPATCHED_AT = datetime(2025, 2, 3, 7, 15, tzinfo=timezone.utc)


class _RecordingNotifier:
    """Notifier stub that records deliveries."""

    def __init__(self) -> None:
        """Initialize delivery tracking."""
        self.delivered: list[DeliveredEpisode] = []

    def notify_episode_ready(self, episode: DeliveredEpisode) -> None:
        """Record one delivery."""
        self.delivered.append(episode)


def _handler(session_factory, now: datetime, notifier=None) -> CallbackHandler:
    """Build a callback handler with a fixed clock."""
    return CallbackHandler(
        session_factory,
        notifier=notifier or _RecordingNotifier(),
        retry_policy=RetryPolicy.from_minutes([105, 75, 30]),
        now_provider=lambda: now,
    )


def _generating_episode(session_factory, project_id, note_ids=()) -> uuid.UUID:
    """Plan the Monday slot and dispatch its first attempt."""
    with closing(session_factory()) as session:
        project = lifecycle.require_project(session, project_id)
        episode = lifecycle.schedule_next_slot(
            session,
            project,
            after=datetime(2025, 2, 2, 23, 0, tzinfo=timezone.utc),
            now=datetime(2025, 2, 2, 23, 0, tzinfo=timezone.utc),
        )
        entry = queue.get_active_entry(session, episode.id)
        queue.acquire_lease(session, entry.id, "holder-a", now=DISPATCHED_AT, ttl=timedelta(minutes=2))
        episode_store.transition(
            session,
            episode.id,
            "DRAFT",
            "GENERATING",
            {
                "generation_started_at": DISPATCHED_AT,
                "generation_attempts": 1,
                "dispatched_note_ids": [str(note_id) for note_id in note_ids],
            },
            now=DISPATCHED_AT,
        )
        queue.release_lease(session, entry.id, "holder-a", now=DISPATCHED_AT)
        session.commit()
        return episode.id


def test_progress_is_stored_and_touches_entry(sqlite_session_factory, seed_project) -> None:
    """Progress updates land on the episode and refresh the entry's last sign of life."""
    seeded = seed_project()
    episode_id = _generating_episode(sqlite_session_factory, seeded.project_id)
    now = datetime(2025, 2, 3, 7, 30, tzinfo=timezone.utc)

    result = _handler(sqlite_session_factory, now).handle_progress(
        episode_id,
        ProgressUpdate(stage="research", percent=40, message="reading sources"),
    )

    assert result.outcome == "applied"
    with closing(sqlite_session_factory()) as session:
        episode = session.get(Episode, episode_id)
        assert episode.progress["stage"] == "research"
        assert episode.progress["percent"] == 40
        entry = session.query(GenerationQueueEntry).filter(GenerationQueueEntry.episode_id == episode_id).one()
        assert entry.updated_at == now


def test_progress_for_draft_is_ignored(sqlite_session_factory, seed_project) -> None:
    """Progress for an episode that is not generating is dropped."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        project = lifecycle.require_project(session, seeded.project_id)
        episode = lifecycle.plan_slot(session, project, DELIVERY, now=DISPATCHED_AT)
        session.commit()
        episode_id = episode.id

    result = _handler(sqlite_session_factory, DISPATCHED_AT).handle_progress(
        episode_id, ProgressUpdate(stage="research")
    )

    assert result.outcome == "ignored"


def test_callbacks_for_unknown_episode_raise(sqlite_session_factory) -> None:
    """Unknown episode ids raise NotFoundError."""
    handler = _handler(sqlite_session_factory, DISPATCHED_AT)

    with pytest.raises(NotFoundError):
        handler.handle_progress(uuid.uuid4(), ProgressUpdate(stage="x"))
    with pytest.raises(NotFoundError):
        handler.handle_complete(uuid.uuid4(), CompletionReport(content="x"))
    with pytest.raises(NotFoundError):
        handler.handle_error(uuid.uuid4(), ErrorReport(message="x"))


def test_complete_publishes_and_plans_next_slot(sqlite_session_factory, seed_project) -> None:
    """Completion stores content, closes the entry, consumes notes and records cost."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        note = planning_notes.create_planning_note(session, seeded.project_id, "More on GPUs", now=DISPATCHED_AT)
        session.commit()
        note_id = note.id
    episode_id = _generating_episode(sqlite_session_factory, seeded.project_id, note_ids=[note_id])
    now = datetime(2025, 2, 3, 8, 10, tzinfo=timezone.utc)

    result = _handler(sqlite_session_factory, now).handle_complete(
        episode_id,
        CompletionReport(
            content="# Episode",
            sources=[{"url": "https://example.test"}],
            cost_reported=0.75,
            title="Chips weekly",
            reading_minutes=6,
        ),
    )

    assert result.outcome == "applied"
    with closing(sqlite_session_factory()) as session:
        episode = session.get(Episode, episode_id)
        assert episode.status == "PUBLISHED"
        assert episode.published_at == now
        assert episode.content == "# Episode"
        assert episode.title == "Chips weekly"
        assert episode.cost_reported == Decimal("0.75")
        assert episode.delivered_at is None

        statuses = {
            entry.episode_id: entry.status for entry in session.query(GenerationQueueEntry).all()
        }
        assert statuses[episode_id] == "completed"
        assert list(statuses.values()).count("pending") == 1

        note = session.query(PlanningNote).one()
        assert (note.status, note.applies_to_episode_id) == ("acknowledged", episode_id)
        assert session.query(DailyCostLedger).one().total_cost == Decimal("0.75")
        project = lifecycle.require_project(session, seeded.project_id)
        assert project.next_scheduled_at == datetime(2025, 2, 10, 9, 0, tzinfo=timezone.utc)


def test_duplicate_complete_is_a_no_op(sqlite_session_factory, seed_project) -> None:
    """A repeated completion neither republishes nor notifies again."""
    seeded = seed_project()
    episode_id = _generating_episode(sqlite_session_factory, seeded.project_id)
    notifier = _RecordingNotifier()
    late = datetime(2025, 2, 3, 9, 10, tzinfo=timezone.utc)
    handler = _handler(sqlite_session_factory, late, notifier)

    first = handler.handle_complete(episode_id, CompletionReport(content="v1", cost_reported=1))
    second = handler.handle_complete(episode_id, CompletionReport(content="v2", cost_reported=1))

    assert (first.outcome, second.outcome) == ("applied", "duplicate")
    assert len(notifier.delivered) == 1
    with closing(sqlite_session_factory()) as session:
        assert session.get(Episode, episode_id).content == "v1"
        assert session.query(DailyCostLedger).one().record_count == 1
        assert session.query(Episode).filter(Episode.status == "DRAFT").count() == 1


def test_late_completion_is_delivered_immediately(sqlite_session_factory, seed_project) -> None:
    """Generation finishing after the delivery instant is delivered and flagged late."""
    seeded = seed_project()
    episode_id = _generating_episode(sqlite_session_factory, seeded.project_id)
    notifier = _RecordingNotifier()
    late = datetime(2025, 2, 3, 9, 10, tzinfo=timezone.utc)

    _handler(sqlite_session_factory, late, notifier).handle_complete(
        episode_id, CompletionReport(content="late")
    )

    assert [delivery.late for delivery in notifier.delivered] == [True]
    with closing(sqlite_session_factory()) as session:
        episode = session.get(Episode, episode_id)
        assert episode.delivered_at == late
        assert episode.delivered_late is True


def test_error_callback_schedules_retry(sqlite_session_factory, seed_project) -> None:
    """A reported error with checkpoints left schedules a retry."""
    seeded = seed_project()
    episode_id = _generating_episode(sqlite_session_factory, seeded.project_id)
    handler = _handler(sqlite_session_factory, datetime(2025, 2, 3, 7, 20, tzinfo=timezone.utc))

    first = handler.handle_error(episode_id, ErrorReport(message="timeout", stage="writing"))
    duplicate = handler.handle_error(episode_id, ErrorReport(message="timeout", stage="writing"))

    assert (first.outcome, first.detail) == ("applied", "retry_scheduled")
    assert duplicate.outcome == "ignored"
    with closing(sqlite_session_factory()) as session:
        assert len(session.get(Episode, episode_id).generation_errors) == 1


def test_error_after_publish_is_ignored(sqlite_session_factory, seed_project) -> None:
    """Errors reported after completion do not touch the published episode."""
    seeded = seed_project()
    episode_id = _generating_episode(sqlite_session_factory, seeded.project_id)
    now = datetime(2025, 2, 3, 8, 0, tzinfo=timezone.utc)
    handler = _handler(sqlite_session_factory, now)
    handler.handle_complete(episode_id, CompletionReport(content="done"))

    result = handler.handle_error(episode_id, ErrorReport(message="late failure"))

    assert result.outcome == "ignored"
    with closing(sqlite_session_factory()) as session:
        assert session.get(Episode, episode_id).status == "PUBLISHED"


def test_complete_for_cancelled_episode_is_ignored(sqlite_session_factory, seed_project) -> None:
    """Completions for cancelled episodes are dropped with the status as detail."""
    seeded = seed_project()
    episode_id = _generating_episode(sqlite_session_factory, seeded.project_id)
    lifecycle.LifecycleController(
        sqlite_session_factory, now_provider=lambda: DISPATCHED_AT
    ).pause(seeded.project_id)

    result = _handler(sqlite_session_factory, DISPATCHED_AT).handle_complete(
        episode_id, CompletionReport(content="too late")
    )

    assert (result.outcome, result.detail) == ("ignored", "CANCELLED")
