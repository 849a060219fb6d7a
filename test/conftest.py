"""Pytest configuration for the episode scheduler test suite."""

import os
import sys
from collections.abc import Callable, Generator
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from uuid import UUID

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _ensure_test_env() -> None:
    """Seed required environment variables for tests."""
    os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
    os.environ.setdefault("LOG_JSON", "false")
    os.environ.setdefault("WORKER_BASE_URL", "http://worker.test")
    os.environ.setdefault("CALLBACK_BASE_URL", "http://scheduler.test")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))


@pytest.fixture()
def sqlite_session_factory() -> Generator[sessionmaker, None, None]:
    """Provide a sqlite session factory and ensure engine cleanup."""
    from models import Base
    from services.database import build_engine

    engine = build_engine(
        "sqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


@dataclass(frozen=True)
class SeededProject:
    """Identifiers of a seeded organization and project."""

    organization_id: UUID
    project_id: UUID


@pytest.fixture()
def seed_project(sqlite_session_factory) -> Callable[..., SeededProject]:
    """Return a helper that seeds an organization with one project."""
    from models import Organization, Project

    def _seed(
        *,
        tier: str = "GROWTH",
        timezone_name: str = "UTC",
        cadence_mode: str = "weekly",
        cadence_days: tuple[int, ...] = (1,),
        delivery_hour: int = 9,
        daily_cost_limit: float | None = None,
        brief: dict | None = None,
        memories: list | None = None,
        paused: bool = False,
    ) -> SeededProject:
        with closing(sqlite_session_factory()) as session:
            organization = Organization(
                name="Acme Research",
                subscription_tier=tier,
                daily_cost_limit=daily_cost_limit,
            )
            session.add(organization)
            session.flush()
            project = Project(
                organization_id=organization.id,
                title="Policy briefing",
                brief=brief if brief is not None else {"topic": "AI policy"},
                memories=memories if memories is not None else [],
                timezone=timezone_name,
                cadence_mode=cadence_mode,
                cadence_days=list(cadence_days),
                delivery_hour=delivery_hour,
                is_paused=paused,
            )
            session.add(project)
            session.flush()
            seeded = SeededProject(organization_id=organization.id, project_id=project.id)
            session.commit()
        return seeded

    return _seed
