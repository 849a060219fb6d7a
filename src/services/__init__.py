"""Infrastructure services for the episode scheduler."""

from services.database import check_connection, get_sync_engine, get_sync_session, run_migrations_sync

__all__ = [
    "check_connection",
    "get_sync_engine",
    "get_sync_session",
    "run_migrations_sync",
]
