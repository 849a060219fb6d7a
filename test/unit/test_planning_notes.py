"""Unit tests for planning note storage and rollover."""

from __future__ import annotations

import uuid
from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest

from episode_scheduler import planning_notes
from episode_scheduler.errors import NotFoundError

NOW = datetime(2025, 2, 2, 12, 0, tzinfo=timezone.utc)


def test_create_note_strips_and_stores(sqlite_session_factory, seed_project) -> None:
    """Notes are stored pending with surrounding whitespace removed."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        note = planning_notes.create_planning_note(session, seeded.project_id, "  Cover chips  ", now=NOW)
        session.commit()

        assert note.note == "Cover chips"
        assert note.status == "pending"
        assert note.rollover_count == 0


@pytest.mark.parametrize("text", ["", "   ", "x" * 11])
def test_create_note_validates_text(sqlite_session_factory, seed_project, text) -> None:
    """Empty or overlong notes are rejected."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        with pytest.raises(ValueError):
            planning_notes.create_planning_note(session, seeded.project_id, text, now=NOW, max_length=10)


def test_create_note_requires_project(sqlite_session_factory) -> None:
    """Notes for unknown projects raise NotFoundError."""
    with closing(sqlite_session_factory()) as session:
        with pytest.raises(NotFoundError):
            planning_notes.create_planning_note(session, uuid.uuid4(), "hello", now=NOW)


def test_pending_notes_are_oldest_first(sqlite_session_factory, seed_project) -> None:
    """Pending notes are listed in creation order."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        planning_notes.create_planning_note(session, seeded.project_id, "second", now=NOW + timedelta(minutes=1))
        planning_notes.create_planning_note(session, seeded.project_id, "first", now=NOW)
        session.commit()

        notes = planning_notes.list_pending_notes(session, seeded.project_id)

    assert [note.note for note in notes] == ["first", "second"]


def test_acknowledge_consumes_pending_notes(sqlite_session_factory, seed_project) -> None:
    """Acknowledged notes are tied to the episode and leave the pending list."""
    seeded = seed_project()
    episode_id = uuid.uuid4()
    with closing(sqlite_session_factory()) as session:
        first = planning_notes.create_planning_note(session, seeded.project_id, "a", now=NOW)
        second = planning_notes.create_planning_note(session, seeded.project_id, "b", now=NOW)

        count = planning_notes.acknowledge_notes(
            session, seeded.project_id, episode_id, [first.id, str(second.id)], now=NOW
        )

        assert count == 2
        assert planning_notes.list_pending_notes(session, seeded.project_id) == []
        assert first.applies_to_episode_id == episode_id
        session.rollback()


def test_acknowledge_skips_notes_not_sent(sqlite_session_factory, seed_project) -> None:
    """Notes outside the dispatched set stay pending."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        sent = planning_notes.create_planning_note(session, seeded.project_id, "sent", now=NOW)
        planning_notes.create_planning_note(session, seeded.project_id, "later", now=NOW + timedelta(minutes=5))

        count = planning_notes.acknowledge_notes(session, seeded.project_id, uuid.uuid4(), [sent.id], now=NOW)

        assert count == 1
        pending = planning_notes.list_pending_notes(session, seeded.project_id)
        assert [note.note for note in pending] == ["later"]
        assert planning_notes.acknowledge_notes(session, seeded.project_id, uuid.uuid4(), [], now=NOW) == 0
        session.rollback()


def test_roll_forward_counts_without_limit(sqlite_session_factory, seed_project) -> None:
    """Without a rollover limit, notes stay pending indefinitely."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        note = planning_notes.create_planning_note(session, seeded.project_id, "keep", now=NOW)
        for _ in range(5):
            archived = planning_notes.roll_forward_notes(session, seeded.project_id, uuid.uuid4(), now=NOW)
            assert archived == 0

        assert note.status == "pending"
        assert note.rollover_count == 5


def test_roll_forward_archives_at_limit(sqlite_session_factory, seed_project) -> None:
    """A configured rollover limit archives notes that reach it."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        note = planning_notes.create_planning_note(session, seeded.project_id, "stale", now=NOW)
        first = planning_notes.roll_forward_notes(
            session, seeded.project_id, uuid.uuid4(), now=NOW, max_rollovers=2
        )
        second = planning_notes.roll_forward_notes(
            session, seeded.project_id, uuid.uuid4(), now=NOW, max_rollovers=2
        )

        assert (first, second) == (0, 1)
        assert note.status == "archived"


def test_archive_note(sqlite_session_factory, seed_project) -> None:
    """Notes can be archived directly."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        note = planning_notes.create_planning_note(session, seeded.project_id, "drop", now=NOW)

        archived = planning_notes.archive_note(session, note.id, now=NOW)

        assert archived.status == "archived"
        with pytest.raises(NotFoundError):
            planning_notes.archive_note(session, uuid.uuid4(), now=NOW)
