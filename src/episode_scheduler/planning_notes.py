"""Planning notes that carry subscriber feedback into the next generation."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Iterable

from sqlalchemy.orm import Session

from config import settings
from episode_scheduler.errors import NotFoundError
from models import PlanningNote, Project

logger = logging.getLogger(__name__)


def create_planning_note(
    session: Session,
    project_id: uuid.UUID,
    note: str,
    *,
    now: datetime,
    applies_to_episode_id: uuid.UUID | None = None,
    max_length: int | None = None,
) -> PlanningNote:
    """Create a pending planning note for a project."""
    text = (note or "").strip()
    if not text:
        raise ValueError("Planning note text is required.")
    limit = max_length if max_length is not None else settings.planning_notes.max_length
    if len(text) > limit:
        raise ValueError(f"Planning note must be at most {limit} characters.")
    if session.get(Project, project_id) is None:
        raise NotFoundError(f"Project {project_id} not found.", details={"project_id": str(project_id)})

    planning_note = PlanningNote(
        project_id=project_id,
        note=text,
        status="pending",
        applies_to_episode_id=applies_to_episode_id,
        rollover_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(planning_note)
    session.flush()
    return planning_note


def list_pending_notes(session: Session, project_id: uuid.UUID) -> list[PlanningNote]:
    """Return a project's pending notes, oldest first."""
    return (
        session.query(PlanningNote)
        .filter(PlanningNote.project_id == project_id, PlanningNote.status == "pending")
        .order_by(PlanningNote.created_at.asc(), PlanningNote.id.asc())
        .all()
    )


def acknowledge_notes(
    session: Session,
    project_id: uuid.UUID,
    episode_id: uuid.UUID,
    note_ids: Iterable[uuid.UUID | str],
    *,
    now: datetime,
) -> int:
    """Mark the notes sent with a successful attempt as consumed by its episode.

    Only notes that are still pending and were part of the worker request are
    acknowledged; notes added after dispatch stay pending for the next episode.
    """
    sent = {uuid.UUID(str(note_id)) for note_id in note_ids}
    if not sent:
        return 0
    notes = [note for note in list_pending_notes(session, project_id) if note.id in sent]
    for planning_note in notes:
        planning_note.status = "acknowledged"
        planning_note.applies_to_episode_id = episode_id
        planning_note.updated_at = now
    session.flush()
    return len(notes)


def roll_forward_notes(
    session: Session,
    project_id: uuid.UUID,
    failed_episode_id: uuid.UUID,
    *,
    now: datetime,
    max_rollovers: int | None = None,
) -> int:
    """Keep pending notes for the next attempt after an episode fails.

    Each pending note records one more rollover. When a rollover limit is
    configured, notes that reach it are archived instead of carried again.
    Returns the number of notes archived.
    """
    limit = max_rollovers if max_rollovers is not None else settings.planning_notes.max_rollovers
    archived = 0
    for planning_note in list_pending_notes(session, project_id):
        planning_note.rollover_count = planning_note.rollover_count + 1
        planning_note.updated_at = now
        if limit is not None and planning_note.rollover_count >= limit:
            planning_note.status = "archived"
            archived += 1
    session.flush()
    if archived:
        logger.info(
            "Archived %s planning notes for project %s after episode %s failed",
            archived,
            project_id,
            failed_episode_id,
        )
    return archived


def archive_note(session: Session, note_id: uuid.UUID, *, now: datetime) -> PlanningNote:
    """Archive a planning note."""
    planning_note = session.get(PlanningNote, note_id)
    if planning_note is None:
        raise NotFoundError(f"Planning note {note_id} not found.", details={"note_id": str(note_id)})
    planning_note.status = "archived"
    planning_note.updated_at = now
    session.flush()
    return planning_note
