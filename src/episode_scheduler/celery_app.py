"""Celery entry point for the episode scheduler tick."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

from celery import Celery
from celery.signals import setup_logging

from config import settings
from episode_scheduler.dispatcher import GenerationDispatcher
from episode_scheduler.worker_client import HttpGenerationWorker
from services.database import get_sync_session
from structured_logging import configure_from_settings

LOGGER = logging.getLogger(__name__)

TICK_TASK_NAME = "episodes.tick"


def _env(var: str, default: str) -> str:
    return os.environ.get(var, default)


celery_app = Celery("episodes.scheduler")
celery_app.conf.broker_url = _env("CELERY_BROKER_URL", "redis://redis:6379/1")
celery_app.conf.result_backend = _env("CELERY_RESULT_BACKEND", "redis://redis:6379/2")
celery_app.conf.task_default_queue = _env("CELERY_QUEUE_NAME", "episodes")
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"

beat_schedule = celery_app.conf.get("beat_schedule")
if beat_schedule is None:
    beat_schedule = {}
beat_schedule[TICK_TASK_NAME] = {
    "task": TICK_TASK_NAME,
    "schedule": float(settings.scheduler.tick_interval_seconds),
}
celery_app.conf.beat_schedule = beat_schedule


@setup_logging.connect
def _configure_worker_logging(**_kwargs: object) -> None:
    """Replace Celery's logging setup with the structured stdout handler."""
    configure_from_settings()


def _session_factory():
    """Return a new synchronous SQLAlchemy session for scheduler tasks."""
    return get_sync_session()


_DISPATCHER: GenerationDispatcher | None = None


def get_dispatcher() -> GenerationDispatcher:
    """Return the process-wide dispatcher, building it on first use."""
    global _DISPATCHER
    if _DISPATCHER is None:
        _DISPATCHER = GenerationDispatcher(
            session_factory=_session_factory,
            worker=HttpGenerationWorker(),
        )
        LOGGER.info("Episode dispatcher initialized: holder=%s", _DISPATCHER.holder_id)
    return _DISPATCHER


def process_tick(*, dispatcher: GenerationDispatcher, now: datetime) -> dict[str, int]:
    """Run one dispatcher tick and return its counters."""
    now = now.astimezone(timezone.utc)
    summary = dispatcher.run_tick(now)
    return summary.as_dict()


@celery_app.task(name=TICK_TASK_NAME)
def tick() -> dict[str, int]:
    """Celery beat job that plans, dispatches and delivers episodes."""
    return process_tick(dispatcher=get_dispatcher(), now=datetime.now(timezone.utc))
