"""FastAPI routes for worker callbacks and project lifecycle events."""

from __future__ import annotations

import logging
import uuid
from contextlib import closing
from datetime import datetime, timezone
from typing import Any, Callable

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from episode_scheduler import planning_notes
from episode_scheduler.callback_handler import (
    CallbackHandler,
    CallbackResult,
    CompletionReport,
    ErrorReport,
    ProgressUpdate,
)
from episode_scheduler.errors import NotFoundError, SchedulingError
from episode_scheduler.lifecycle import LifecycleController, ProjectScheduleState
from services.database import check_connection, get_sync_session

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProgressBody(_CamelModel):
    """Progress callback body."""

    stage: str
    percent: int | None = Field(default=None, ge=0, le=100)
    message: str | None = None


class CompleteBody(_CamelModel):
    """Completion callback body."""

    content: str
    sources: list[Any] = Field(default_factory=list)
    cost_reported: float | None = Field(default=None, alias="costReported", ge=0)
    title: str | None = None
    reading_minutes: int | None = Field(default=None, alias="readingMinutes", ge=0)


class ErrorBody(_CamelModel):
    """Error callback body."""

    message: str
    stage: str | None = None


class CadenceBody(_CamelModel):
    """Cadence change body."""

    mode: str
    days: list[int] | None = None
    delivery_hour: int = Field(alias="deliveryHour")


class TimezoneBody(_CamelModel):
    """Timezone change body."""

    timezone: str


class PlanningNoteBody(_CamelModel):
    """New planning note body."""

    note: str
    applies_to_episode_id: uuid.UUID | None = Field(default=None, alias="appliesToEpisodeId")


def _callback_payload(result: CallbackResult) -> dict[str, Any]:
    return {
        "outcome": result.outcome,
        "episodeId": str(result.episode_id),
        "detail": result.detail,
    }


def _state_payload(state: ProjectScheduleState) -> dict[str, Any]:
    return {
        "projectId": str(state.project_id),
        "isPaused": state.is_paused,
        "timezone": state.timezone,
        "cadence": {
            "mode": state.cadence["mode"],
            "days": state.cadence["days"],
            "deliveryHour": state.cadence["delivery_hour"],
        },
        "nextScheduledAt": state.next_scheduled_at.isoformat() if state.next_scheduled_at else None,
        "draftEpisodeId": str(state.draft_episode_id) if state.draft_episode_id else None,
    }


def create_app(
    *,
    callbacks: CallbackHandler,
    lifecycle: LifecycleController,
    session_factory: Callable[[], Session],
    health_check: Callable[[], bool] | None = None,
    now_provider: Callable[[], datetime] | None = None,
    title: str = "episode-scheduler",
    version: str = "0.1.0",
) -> FastAPI:
    """Create the scheduler API with callback and lifecycle routes."""
    app = FastAPI(title=title, version=version)
    clock = now_provider or (lambda: datetime.now(timezone.utc))

    @app.exception_handler(NotFoundError)
    async def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"code": exc.code, "message": exc.message})

    @app.exception_handler(SchedulingError)
    async def _invalid_schedule(_request: Request, exc: SchedulingError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"code": exc.code, "message": exc.message, "details": exc.details},
        )

    @app.exception_handler(ValueError)
    async def _invalid_value(_request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"code": "invalid_request", "message": str(exc)})

    @app.get("/health")
    def health() -> dict[str, Any]:
        database_ok = health_check() if health_check is not None else True
        return {"status": "ok" if database_ok else "degraded", "database": database_ok}

    @app.post("/callbacks/episodes/{episode_id}/progress")
    def progress(episode_id: uuid.UUID, body: ProgressBody) -> dict[str, Any]:
        result = callbacks.handle_progress(
            episode_id,
            ProgressUpdate(stage=body.stage, percent=body.percent, message=body.message),
        )
        return _callback_payload(result)

    @app.post("/callbacks/episodes/{episode_id}/complete")
    def complete(episode_id: uuid.UUID, body: CompleteBody) -> dict[str, Any]:
        result = callbacks.handle_complete(
            episode_id,
            CompletionReport(
                content=body.content,
                sources=body.sources,
                cost_reported=body.cost_reported,
                title=body.title,
                reading_minutes=body.reading_minutes,
            ),
        )
        return _callback_payload(result)

    @app.post("/callbacks/episodes/{episode_id}/error")
    def error(episode_id: uuid.UUID, body: ErrorBody) -> dict[str, Any]:
        result = callbacks.handle_error(episode_id, ErrorReport(message=body.message, stage=body.stage))
        return _callback_payload(result)

    @app.post("/projects/{project_id}/activate")
    def activate(project_id: uuid.UUID) -> dict[str, Any]:
        return _state_payload(lifecycle.activate(project_id))

    @app.post("/projects/{project_id}/pause")
    def pause(project_id: uuid.UUID) -> dict[str, Any]:
        return _state_payload(lifecycle.pause(project_id))

    @app.post("/projects/{project_id}/resume")
    def resume(project_id: uuid.UUID) -> dict[str, Any]:
        return _state_payload(lifecycle.resume(project_id))

    @app.put("/projects/{project_id}/cadence")
    def update_cadence(project_id: uuid.UUID, body: CadenceBody) -> dict[str, Any]:
        state = lifecycle.update_cadence(
            project_id,
            mode=body.mode,
            days=body.days,
            delivery_hour=body.delivery_hour,
        )
        return _state_payload(state)

    @app.put("/projects/{project_id}/timezone")
    def update_timezone(project_id: uuid.UUID, body: TimezoneBody) -> dict[str, Any]:
        return _state_payload(lifecycle.update_timezone(project_id, body.timezone))

    @app.post("/projects/{project_id}/planning-notes", status_code=201)
    def create_note(project_id: uuid.UUID, body: PlanningNoteBody) -> dict[str, Any]:
        with closing(session_factory()) as session:
            try:
                note = planning_notes.create_planning_note(
                    session,
                    project_id,
                    body.note,
                    now=clock(),
                    applies_to_episode_id=body.applies_to_episode_id,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
            payload = {
                "id": str(note.id),
                "projectId": str(note.project_id),
                "note": note.note,
                "status": note.status,
            }
        logger.info("Planning note %s added to project %s", payload["id"], project_id)
        return payload

    return app


def build_default_app() -> FastAPI:
    """Create the API wired to the configured database."""
    return create_app(
        callbacks=CallbackHandler(get_sync_session),
        lifecycle=LifecycleController(get_sync_session),
        session_factory=get_sync_session,
        health_check=check_connection,
    )


def run_app(
    app: FastAPI,
    *,
    host: str = "127.0.0.1",
    port: int = 8000,
    log_level: str = "info",
) -> None:
    """Run one FastAPI app through uvicorn."""
    uvicorn.run(app, host=host, port=port, log_level=log_level, log_config=None)
