"""Metadata store: snapshots, run records and rollback events.

The orchestrator depends on the ``MetadataStore`` capability only. Two
backends share one SQLAlchemy implementation and differ in how the engine is
set up: an embedded SQLite file (default) and a networked PostgreSQL server.

Run records and rollback events are append-only: the store offers no way to
update or delete them. Snapshot rows are only ever deleted by retention
pruning, and the row goes first, so a crash between row and directory
deletion leaves an orphan directory for the startup sweep, never a dangling
row.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ankibackup.database import create_engine, sqlite_path_from_url
from ankibackup.exceptions import Conflict, MetadataFailure
from ankibackup.models import Base, RollbackEvent, RunRecord, Snapshot

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession

    from ankibackup.config import Settings

logger = logging.getLogger(__name__)

# Ids sharing a second differ only in the "-N" suffix, so a longer id is a
# later one; comparing length first keeps "-10" after "-9".
_NEWEST_FIRST = (
    Snapshot.created_at.desc(),
    func.length(Snapshot.id).desc(),
    Snapshot.id.desc(),
)

DEFAULT_LIST_LIMIT = 50


@runtime_checkable
class MetadataStore(Protocol):
    """Capability interface consumed by the orchestrator and the API."""

    async def init_schema(self) -> None: ...

    async def insert_snapshot(self, snapshot: Snapshot) -> Snapshot: ...

    async def insert_run(self, record: RunRecord) -> RunRecord: ...

    async def insert_rollback_event(self, event: RollbackEvent) -> RollbackEvent: ...

    async def list_snapshots(self) -> list[Snapshot]: ...

    async def get_snapshot(self, snapshot_id: str) -> Snapshot | None: ...

    async def latest_snapshot(self) -> Snapshot | None: ...

    async def delete_snapshot(self, snapshot_id: str) -> bool: ...

    async def snapshot_ids(self) -> set[str]: ...

    async def list_runs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[RunRecord]: ...

    async def latest_run(self) -> RunRecord | None: ...

    async def list_rollback_events(
        self, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[RollbackEvent]: ...

    async def ping(self) -> None: ...

    async def dispose(self) -> None: ...


class SQLAlchemyMetadataStore:
    """``MetadataStore`` over an async SQLAlchemy engine."""

    backend = "sqlalchemy"

    def __init__(self, database_url: str, *, debug: bool = False) -> None:
        self.database_url = database_url
        self.engine, self.session_factory = create_engine(database_url, debug=debug)

    @asynccontextmanager
    async def _session(self, action: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Metadata store failed to %s: %s", action, exc)
            raise MetadataFailure(f"Metadata store failed to {action}: {exc}") from exc

    async def init_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            raise MetadataFailure(f"Failed to create metadata schema: {exc}") from exc
        logger.info("Metadata schema ready (%s)", self.backend)

    async def insert_snapshot(self, snapshot: Snapshot) -> Snapshot:
        """Insert a snapshot row. Raises ``Conflict`` if the id already exists."""
        try:
            async with self.session_factory() as session:
                session.add(snapshot)
                await session.commit()
        except IntegrityError as exc:
            raise Conflict(f"Snapshot {snapshot.id} already exists") from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Metadata store failed to insert snapshot %s: %s", snapshot.id, exc)
            raise MetadataFailure(f"Failed to insert snapshot {snapshot.id}: {exc}") from exc
        return snapshot

    async def insert_run(self, record: RunRecord) -> RunRecord:
        async with self._session("insert run record") as session:
            session.add(record)
            await session.commit()
        return record

    async def insert_rollback_event(self, event: RollbackEvent) -> RollbackEvent:
        async with self._session("insert rollback event") as session:
            session.add(event)
            await session.commit()
        return event

    async def list_snapshots(self) -> list[Snapshot]:
        stmt = select(Snapshot).order_by(*_NEWEST_FIRST)
        async with self._session("list snapshots") as session:
            return list((await session.scalars(stmt)).all())

    async def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        async with self._session("get snapshot") as session:
            return await session.get(Snapshot, snapshot_id)

    async def latest_snapshot(self) -> Snapshot | None:
        stmt = select(Snapshot).order_by(*_NEWEST_FIRST).limit(1)
        async with self._session("get latest snapshot") as session:
            return (await session.scalars(stmt)).first()

    async def delete_snapshot(self, snapshot_id: str) -> bool:
        """Delete a snapshot row only. Returns False if there was no such row."""
        async with self._session("delete snapshot") as session:
            result = await session.execute(delete(Snapshot).where(Snapshot.id == snapshot_id))
            await session.commit()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def snapshot_ids(self) -> set[str]:
        async with self._session("list snapshot ids") as session:
            return set((await session.scalars(select(Snapshot.id))).all())

    async def list_runs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[RunRecord]:
        stmt = select(RunRecord).order_by(RunRecord.id.desc()).limit(limit)
        async with self._session("list run records") as session:
            return list((await session.scalars(stmt)).all())

    async def latest_run(self) -> RunRecord | None:
        runs = await self.list_runs(limit=1)
        return runs[0] if runs else None

    async def list_rollback_events(self, limit: int = DEFAULT_LIST_LIMIT) -> list[RollbackEvent]:
        stmt = select(RollbackEvent).order_by(RollbackEvent.id.desc()).limit(limit)
        async with self._session("list rollback events") as session:
            return list((await session.scalars(stmt)).all())

    async def ping(self) -> None:
        async with self._session("ping") as session:
            await session.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        await self.engine.dispose()


class SqliteMetadataStore(SQLAlchemyMetadataStore):
    """Embedded store in a single SQLite file (WAL journal, busy timeout)."""

    backend = "sqlite"

    async def init_schema(self) -> None:
        db_path = sqlite_path_from_url(self.database_url)
        if db_path is not None:
            try:
                db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise MetadataFailure(f"Cannot create database directory: {exc}") from exc
        await super().init_schema()


class PostgresMetadataStore(SQLAlchemyMetadataStore):
    """Networked store on PostgreSQL through asyncpg, with pre-ping pooling."""

    backend = "postgres"


def create_metadata_store(settings: Settings) -> SQLAlchemyMetadataStore:
    """Pick the backend from the database URL scheme."""
    url = settings.resolved_database_url()
    if url.startswith("sqlite"):
        return SqliteMetadataStore(url, debug=settings.debug)
    if url.startswith("postgresql"):
        return PostgresMetadataStore(url, debug=settings.debug)
    raise ValueError(f"Unsupported database URL scheme: {url.split(':', 1)[0]}")
