"""Database engine and session management."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

SQLITE_BUSY_TIMEOUT_MS = 5000


def sqlite_path_from_url(database_url: str) -> Path | None:
    """Return the database file of a SQLite URL, or None for memory/other backends."""
    if not database_url.startswith("sqlite") or "///" not in database_url:
        return None
    db_path = database_url.split("///", 1)[-1]
    if not db_path or db_path == ":memory:":
        return None
    return Path(db_path)


def create_engine(
    database_url: str,
    *,
    debug: bool = False,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    Returns (engine, session_factory) tuple. SQLite connections run in WAL
    mode with a busy timeout; networked backends get pre-ping pooling.
    """
    engine_kwargs: dict[str, Any] = {"echo": debug}
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_pre_ping"] = True

    engine = create_async_engine(database_url, **engine_kwargs)
    if database_url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


def _set_sqlite_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA synchronous=FULL")
    finally:
        cursor.close()

