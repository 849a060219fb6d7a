"""Unit tests for idempotent episode creation and guarded transitions."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timezone

import pytest

from episode_scheduler import episode_store
from episode_scheduler.errors import InvalidTransition
from models import Episode, EpisodeAuditLog

NOW = datetime(2025, 2, 2, 23, 0, tzinfo=timezone.utc)
DELIVERY = datetime(2025, 2, 3, 9, 0, tzinfo=timezone.utc)


def test_idempotency_key_is_project_and_minute(seed_project) -> None:
    """Slot keys combine the project id with the delivery minute."""
    seeded = seed_project()
    delivery = datetime(2025, 2, 3, 9, 0, 42, tzinfo=timezone.utc)

    key = episode_store.idempotency_key(seeded.project_id, delivery)

    assert key == f"{seeded.project_id}:2025-02-03T09:00Z"


def test_ensure_draft_episode_is_idempotent(sqlite_session_factory, seed_project) -> None:
    """Repeated calls for one slot return the same DRAFT episode."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        first = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        second = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        session.commit()
        first_id = first.id
        assert second.id == first_id

    with closing(sqlite_session_factory()) as session:
        episodes = session.query(Episode).filter(Episode.project_id == seeded.project_id).all()
        assert [episode.id for episode in episodes] == [first_id]
        assert episodes[0].status == "DRAFT"
        assert episodes[0].episode_number == 1
        assert episodes[0].organization_id == seeded.organization_id


def test_ensure_draft_episode_numbers_new_slots(sqlite_session_factory, seed_project) -> None:
    """Each new slot receives the next episode number."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        first = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        second = episode_store.ensure_draft_episode(
            session,
            seeded.project_id,
            datetime(2025, 2, 10, 9, 0, tzinfo=timezone.utc),
            now=NOW,
        )
        session.commit()

        assert (first.episode_number, second.episode_number) == (1, 2)


def test_ensure_draft_episode_recovers_from_concurrent_insert(
    sqlite_session_factory,
    seed_project,
    monkeypatch,
) -> None:
    """A losing insert re-reads the row created by the concurrent winner."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        winner = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        session.commit()
        winner_id = winner.id

    original_find = episode_store._find_by_key
    calls = {"count": 0}

    def _miss_first_lookup(session, project_id, key):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return original_find(session, project_id, key)

    monkeypatch.setattr(episode_store, "_find_by_key", _miss_first_lookup)

    with closing(sqlite_session_factory()) as session:
        loser = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        session.commit()
        assert loser.id == winner_id
        assert session.query(Episode).count() == 1
    assert calls["count"] == 2


def test_transition_applies_and_audits(sqlite_session_factory, seed_project) -> None:
    """A guarded transition updates fields and records an audit row."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        episode = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        updated = episode_store.transition(
            session,
            episode.id,
            "DRAFT",
            "GENERATING",
            {"generation_started_at": NOW, "generation_attempts": 1},
            now=NOW,
            reason="dispatch",
        )
        session.commit()

        assert updated.status == "GENERATING"
        assert updated.generation_attempts == 1
        audit = session.query(EpisodeAuditLog).filter(EpisodeAuditLog.episode_id == episode.id).one()
        assert (audit.from_status, audit.to_status, audit.reason) == ("DRAFT", "GENERATING", "dispatch")


def test_transition_rejects_stale_from_status(sqlite_session_factory, seed_project) -> None:
    """A writer with an outdated view of the status loses the compare-and-set."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        episode = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        episode_store.transition(session, episode.id, "DRAFT", "GENERATING", now=NOW)
        episode_store.transition(session, episode.id, "GENERATING", "PUBLISHED", now=NOW)
        session.commit()

        with pytest.raises(InvalidTransition) as excinfo:
            episode_store.transition(session, episode.id, "GENERATING", "FAILED", now=NOW)

        assert excinfo.value.current_status == "PUBLISHED"
        session.rollback()
        assert episode_store.require_episode(session, episode.id).status == "PUBLISHED"


@pytest.mark.parametrize(
    ("from_status", "to_status", "reason"),
    [
        ("PUBLISHED", "DRAFT", None),
        ("FAILED", "GENERATING", None),
        ("DRAFT", "PUBLISHED", None),
        ("GENERATING", "GENERATING", None),
    ],
)
def test_transition_rejects_disallowed_edges(
    sqlite_session_factory,
    seed_project,
    from_status,
    to_status,
    reason,
) -> None:
    """Edges outside the lifecycle graph raise InvalidTransition."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        episode = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        with pytest.raises(InvalidTransition):
            episode_store.transition(
                session,
                episode.id,
                from_status,
                to_status,
                now=NOW,
                reason=reason,
            )


def test_retry_reentry_is_the_only_self_transition(sqlite_session_factory, seed_project) -> None:
    """GENERATING -> GENERATING is allowed only for retries."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        episode = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        episode_store.transition(session, episode.id, "DRAFT", "GENERATING", now=NOW)
        retried = episode_store.transition(
            session,
            episode.id,
            "GENERATING",
            "GENERATING",
            {"generation_attempts": 2},
            now=NOW,
            reason=episode_store.RETRY_REASON,
        )

        assert retried.status == "GENERATING"
        assert retried.generation_attempts == 2


def test_cancel_frees_the_slot_key(sqlite_session_factory, seed_project) -> None:
    """After cancellation a fresh DRAFT can be created for the same slot."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        original = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        episode_store.cancel_episode(session, original, now=NOW, reason="cadence_changed")
        replacement = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        session.commit()

        assert replacement.id != original.id
        assert replacement.status == "DRAFT"
        cancelled = episode_store.require_episode(session, original.id)
        assert cancelled.status == "CANCELLED"
        assert cancelled.status_reason == "cadence_changed"
        assert episode_store.get_episode_for_slot(session, seeded.project_id, DELIVERY).id == replacement.id


def test_append_generation_error_keeps_history(sqlite_session_factory, seed_project) -> None:
    """Errors accumulate with attempt numbers and timestamps."""
    seeded = seed_project()
    with closing(sqlite_session_factory()) as session:
        episode = episode_store.ensure_draft_episode(session, seeded.project_id, DELIVERY, now=NOW)
        episode_store.append_generation_error(session, episode, message="boom", now=NOW, stage="outline")
        episode_store.append_generation_error(session, episode, message="again", now=NOW)
        session.commit()

        stored = episode_store.require_episode(session, episode.id)
        assert [entry["message"] for entry in stored.generation_errors] == ["boom", "again"]
        assert stored.generation_errors[0]["stage"] == "outline"
        assert stored.generation_errors[0]["timestamp"] == NOW.isoformat()
