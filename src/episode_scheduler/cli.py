"""Operator command-line interface implemented with Typer."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

import typer

from episode_scheduler.callback_api import build_default_app, run_app
from episode_scheduler.celery_app import get_dispatcher, process_tick
from episode_scheduler.errors import EpisodeSchedulerError
from episode_scheduler.lifecycle import LifecycleController, ProjectScheduleState
from services.database import get_sync_session, run_migrations_sync
from structured_logging import configure_from_settings

SUCCESS_EXIT_CODE = 0
DOMAIN_ERROR_EXIT_CODE = 3


def _emit(data: Any, as_json: bool) -> None:
    """Render command output in the requested format."""
    if as_json:
        typer.echo(json.dumps(data, sort_keys=True, separators=(",", ":"), default=str))
        return
    if isinstance(data, dict):
        for key in sorted(data):
            typer.echo(f"{key}: {data[key]}")
        return
    typer.echo(str(data))


def _run(invoke: Callable[[], Any], as_json: bool) -> None:
    """Execute one command and map domain errors to an exit code."""
    try:
        result = invoke()
    except EpisodeSchedulerError as exc:
        if as_json:
            typer.echo(json.dumps({"error": exc.code, "message": exc.message}), err=True)
        else:
            typer.echo(f"error: {exc.message}", err=True)
        raise typer.Exit(code=DOMAIN_ERROR_EXIT_CODE) from exc
    _emit(result, as_json)
    raise typer.Exit(code=SUCCESS_EXIT_CODE)


def _parse_now(value: str | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _lifecycle_controller() -> LifecycleController:
    return LifecycleController(get_sync_session)


def _state_dict(state: ProjectScheduleState) -> dict[str, Any]:
    return {
        "project_id": str(state.project_id),
        "is_paused": state.is_paused,
        "next_scheduled_at": state.next_scheduled_at.isoformat() if state.next_scheduled_at else None,
        "draft_episode_id": str(state.draft_episode_id) if state.draft_episode_id else None,
    }


app = typer.Typer(no_args_is_help=True, help="Episode scheduler operator commands")


@app.callback()
def main(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
) -> None:
    """Configure logging and store global options."""
    configure_from_settings()
    ctx.obj = {"as_json": as_json}


@app.command("tick")
def tick_command(
    ctx: typer.Context,
    now: str | None = typer.Option(None, help="Override the tick instant (ISO-8601)"),
) -> None:
    """Run one scheduling tick in-process."""
    instant = _parse_now(now)
    _run(lambda: process_tick(dispatcher=get_dispatcher(), now=instant), ctx.obj["as_json"])


@app.command("migrate")
def migrate_command(ctx: typer.Context) -> None:
    """Apply database migrations."""

    def invoke() -> dict[str, str]:
        run_migrations_sync()
        return {"status": "migrated"}

    _run(invoke, ctx.obj["as_json"])


@app.command("serve")
def serve_command(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    log_level: str = typer.Option("info", help="uvicorn log level"),
) -> None:
    """Serve the callback and lifecycle API with uvicorn."""
    run_app(build_default_app(), host=host, port=port, log_level=log_level)


@app.command("pause")
def pause_command(
    ctx: typer.Context,
    project_id: uuid.UUID = typer.Argument(..., help="Project id"),
) -> None:
    """Pause a project and cancel its open episodes."""
    controller = _lifecycle_controller()
    _run(lambda: _state_dict(controller.pause(project_id)), ctx.obj["as_json"])


@app.command("resume")
def resume_command(
    ctx: typer.Context,
    project_id: uuid.UUID = typer.Argument(..., help="Project id"),
) -> None:
    """Resume a paused project from now."""
    controller = _lifecycle_controller()
    _run(lambda: _state_dict(controller.resume(project_id)), ctx.obj["as_json"])


if __name__ == "__main__":
    app()
