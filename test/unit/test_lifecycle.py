"""Unit tests for project lifecycle events."""

from __future__ import annotations

import uuid
from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest

from episode_scheduler import episode_store, lifecycle, queue
from episode_scheduler.errors import NotFoundError, SchedulingError
from episode_scheduler.lifecycle import LifecycleController
from models import Episode, GenerationQueueEntry

# Sunday 2025-02-02 23:00 UTC.
NOW = datetime(2025, 2, 2, 23, 0, tzinfo=timezone.utc)
MONDAY_NINE = datetime(2025, 2, 3, 9, 0, tzinfo=timezone.utc)


def _controller(session_factory, now=NOW) -> LifecycleController:
    """Build a controller with a fixed clock."""
    return LifecycleController(session_factory, now_provider=lambda: now)


def _episodes(session_factory, project_id) -> list[tuple[str, datetime]]:
    """Return (status, scheduled_for) for every episode of a project."""
    with closing(session_factory()) as session:
        return [
            (episode.status, episode.scheduled_for)
            for episode in episode_store.list_project_episodes(session, project_id)
        ]


def _queue_count(session_factory, project_id) -> int:
    with closing(session_factory()) as session:
        return (
            session.query(GenerationQueueEntry)
            .filter(GenerationQueueEntry.project_id == project_id)
            .count()
        )


def _mark_generating(session_factory, project_id) -> None:
    """Move the project's DRAFT episode into generation."""
    with closing(session_factory()) as session:
        draft = episode_store.list_project_episodes(session, project_id, statuses=("DRAFT",))[0]
        entry = queue.get_active_entry(session, draft.id)
        queue.acquire_lease(session, entry.id, "holder-a", now=NOW, ttl=timedelta(minutes=2))
        episode_store.transition(session, draft.id, "DRAFT", "GENERATING", now=NOW)
        session.commit()


def test_activate_plans_first_slot(sqlite_session_factory, seed_project) -> None:
    """Activation creates the DRAFT episode and queue entry for the next slot."""
    seeded = seed_project()

    state = _controller(sqlite_session_factory).activate(seeded.project_id)

    assert state.next_scheduled_at == MONDAY_NINE
    assert state.draft_episode_id is not None
    assert _episodes(sqlite_session_factory, seeded.project_id) == [("DRAFT", MONDAY_NINE)]
    assert _queue_count(sqlite_session_factory, seeded.project_id) == 1


def test_activate_is_idempotent(sqlite_session_factory, seed_project) -> None:
    """Activating twice keeps a single episode for the slot."""
    seeded = seed_project()
    controller = _controller(sqlite_session_factory)

    first = controller.activate(seeded.project_id)
    second = controller.activate(seeded.project_id)

    assert first.draft_episode_id == second.draft_episode_id
    assert _queue_count(sqlite_session_factory, seeded.project_id) == 1


def test_pause_cancels_open_work(sqlite_session_factory, seed_project) -> None:
    """Pause removes queue entries, cancels episodes and clears the next slot."""
    seeded = seed_project()
    controller = _controller(sqlite_session_factory)
    controller.activate(seeded.project_id)

    state = controller.pause(seeded.project_id)

    assert state.is_paused is True
    assert state.next_scheduled_at is None
    assert state.draft_episode_id is None
    assert _queue_count(sqlite_session_factory, seeded.project_id) == 0
    assert [status for status, _ in _episodes(sqlite_session_factory, seeded.project_id)] == ["CANCELLED"]


def test_pause_cancels_generating_episode(sqlite_session_factory, seed_project) -> None:
    """An in-flight generation is cancelled when its project pauses."""
    seeded = seed_project()
    controller = _controller(sqlite_session_factory)
    controller.activate(seeded.project_id)
    _mark_generating(sqlite_session_factory, seeded.project_id)

    controller.pause(seeded.project_id)

    with closing(sqlite_session_factory()) as session:
        episode = session.query(Episode).one()
        assert episode.status == "CANCELLED"
        assert episode.status_reason == "project_paused"
    assert _queue_count(sqlite_session_factory, seeded.project_id) == 0


def test_pause_is_idempotent(sqlite_session_factory, seed_project) -> None:
    """Pausing a paused project is a no-op."""
    seeded = seed_project()
    controller = _controller(sqlite_session_factory)
    controller.activate(seeded.project_id)
    controller.pause(seeded.project_id)

    state = controller.pause(seeded.project_id)

    assert state.is_paused is True
    assert len(_episodes(sqlite_session_factory, seeded.project_id)) == 1


def test_resume_schedules_from_now(sqlite_session_factory, seed_project) -> None:
    """Resume plans the next slot after the resume instant, not the old one."""
    seeded = seed_project()
    _controller(sqlite_session_factory).activate(seeded.project_id)
    _controller(sqlite_session_factory).pause(seeded.project_id)

    resumed_at = datetime(2025, 2, 3, 10, 0, tzinfo=timezone.utc)
    state = _controller(sqlite_session_factory, resumed_at).resume(seeded.project_id)

    assert state.is_paused is False
    assert state.next_scheduled_at == datetime(2025, 2, 10, 9, 0, tzinfo=timezone.utc)
    assert state.draft_episode_id is not None
    assert _queue_count(sqlite_session_factory, seeded.project_id) == 1


def test_paused_project_is_not_planned(sqlite_session_factory, seed_project) -> None:
    """Paused projects never appear in the planning sweep."""
    seed_project(paused=True)
    with closing(sqlite_session_factory()) as session:
        assert lifecycle.list_projects_due_for_planning(session, now=NOW) == []


def test_cadence_change_replaces_draft(sqlite_session_factory, seed_project) -> None:
    """A new cadence cancels the pending DRAFT and plans the new slot."""
    seeded = seed_project()
    controller = _controller(sqlite_session_factory)
    controller.activate(seeded.project_id)

    state = controller.update_cadence(seeded.project_id, mode="weekly", days=[3], delivery_hour=6)

    wednesday = datetime(2025, 2, 5, 6, 0, tzinfo=timezone.utc)
    assert state.next_scheduled_at == wednesday
    assert state.cadence == {"mode": "weekly", "days": [3], "delivery_hour": 6}
    assert _episodes(sqlite_session_factory, seeded.project_id) == [
        ("CANCELLED", MONDAY_NINE),
        ("DRAFT", wednesday),
    ]
    assert _queue_count(sqlite_session_factory, seeded.project_id) == 1


def test_cadence_change_leaves_generation_in_flight(sqlite_session_factory, seed_project) -> None:
    """A generating episode finishes; the new cadence applies afterwards."""
    seeded = seed_project()
    controller = _controller(sqlite_session_factory)
    controller.activate(seeded.project_id)
    _mark_generating(sqlite_session_factory, seeded.project_id)

    state = controller.update_cadence(seeded.project_id, mode="daily", days=None, delivery_hour=9)

    assert state.cadence["mode"] == "daily"
    assert state.next_scheduled_at == MONDAY_NINE
    assert _episodes(sqlite_session_factory, seeded.project_id) == [("GENERATING", MONDAY_NINE)]


def test_invalid_cadence_changes_nothing(sqlite_session_factory, seed_project) -> None:
    """Validation errors leave the stored schedule untouched."""
    seeded = seed_project()
    controller = _controller(sqlite_session_factory)
    before = controller.activate(seeded.project_id)

    with pytest.raises(SchedulingError):
        controller.update_cadence(seeded.project_id, mode="weekly", days=[9], delivery_hour=6)

    after = controller.activate(seeded.project_id)
    assert after == before


def test_timezone_change_reschedules(sqlite_session_factory, seed_project) -> None:
    """Changing the timezone moves the slot to the new local hour."""
    seeded = seed_project()
    controller = _controller(sqlite_session_factory)
    controller.activate(seeded.project_id)

    state = controller.update_timezone(seeded.project_id, "America/New_York")

    # Monday 09:00 EST.
    assert state.next_scheduled_at == datetime(2025, 2, 3, 14, 0, tzinfo=timezone.utc)
    assert state.timezone == "America/New_York"


def test_invalid_timezone_raises(sqlite_session_factory, seed_project) -> None:
    """Unknown timezones are rejected."""
    seeded = seed_project()

    with pytest.raises(SchedulingError):
        _controller(sqlite_session_factory).update_timezone(seeded.project_id, "Nowhere/Land")


def test_unknown_project_raises(sqlite_session_factory) -> None:
    """Lifecycle events for unknown projects raise NotFoundError."""
    with pytest.raises(NotFoundError):
        _controller(sqlite_session_factory).pause(uuid.uuid4())


def test_missed_slot_skips_forward(sqlite_session_factory, seed_project) -> None:
    """A slot that passed without an episode moves on to the next one."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        project = lifecycle.require_project(session, seeded.project_id)
        project.next_scheduled_at = MONDAY_NINE
        session.commit()

    later = datetime(2025, 2, 4, 12, 0, tzinfo=timezone.utc)
    state = _controller(sqlite_session_factory, later).activate(seeded.project_id)

    assert state.next_scheduled_at == datetime(2025, 2, 10, 9, 0, tzinfo=timezone.utc)
