"""
Async SQLite engine factory.

Uses SQLAlchemy 2.x async engine with the aiosqlite driver. Every new DBAPI
connection gets the same pragmas: WAL journal for concurrent readers while
the ingest path writes, NORMAL synchronous, and a short driver-level busy
timeout. Longer waits are handled by the store's bounded retry loop.

CHANGELOG:
- 2026-10-08: Initial creation (STORY-105)
"""

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=OFF",
    "PRAGMA temp_store=MEMORY",
)


def sqlite_url(db_path: str | Path) -> str:
    """Build an aiosqlite SQLAlchemy URL for a database file."""
    return f"sqlite+aiosqlite:///{Path(db_path)}"


def create_engine(db_path: str | Path, busy_timeout_ms: int = 5000) -> AsyncEngine:
    """Create an async engine for *db_path*, creating its directory if needed.

    Args:
        db_path: SQLite database file.
        busy_timeout_ms: Driver-level wait on a locked database.

    Returns:
        AsyncEngine: Engine whose connections carry the hub pragmas.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(sqlite_url(path), echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragmas(dbapi_connection, connection_record) -> None:  # noqa: ARG001
        cursor = dbapi_connection.cursor()
        try:
            for pragma in _PRAGMAS:
                cursor.execute(pragma)
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        finally:
            cursor.close()

    return engine
