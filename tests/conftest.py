"""Shared test fixtures for the backup daemon."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from ankibackup.config import Settings
from ankibackup.filesystem.pointer import ActivePointer
from ankibackup.filesystem.repository import BackupRepository
from ankibackup.filesystem.run_lock import RunLock
from ankibackup.main import build_orchestrator, create_app
from ankibackup.services.metadata_store import SqliteMetadataStore
from ankibackup.services.orchestrator import BackupOrchestrator, BackupPolicy
from ankibackup.services.sync_service import SyncResult, scan_media_manifest

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

    from ankibackup.services.fingerprint import AssetEntry

logger = logging.getLogger(__name__)

CLOCK_START = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def make_collection(
    path: Path,
    decks: dict[int, str] | None = None,
    cards: list[int] | None = None,
    notes: int = 0,
    revlog: int = 0,
) -> Path:
    """Write a minimal SQLite file with the tables the stats query reads.

    ``cards`` lists the deck id of each card.
    """
    decks = decks if decks is not None else {1: "Default"}
    cards = cards if cards is not None else []
    path.unlink(missing_ok=True)
    with closing(sqlite3.connect(path)) as conn:
        conn.execute("CREATE TABLE col (id INTEGER PRIMARY KEY, decks TEXT NOT NULL)")
        conn.execute("CREATE TABLE cards (id INTEGER PRIMARY KEY, did INTEGER NOT NULL)")
        conn.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY)")
        conn.execute("CREATE TABLE revlog (id INTEGER PRIMARY KEY)")
        decks_json = {str(did): {"id": did, "name": name} for did, name in decks.items()}
        conn.execute("INSERT INTO col (id, decks) VALUES (1, ?)", (json.dumps(decks_json),))
        conn.executemany("INSERT INTO cards (did) VALUES (?)", [(did,) for did in cards])
        conn.executemany("INSERT INTO notes (id) VALUES (?)", [(i,) for i in range(1, notes + 1)])
        conn.executemany(
            "INSERT INTO revlog (id) VALUES (?)", [(i,) for i in range(1, revlog + 1)]
        )
        conn.commit()
    return path


class FakeClock:
    """Deterministic clock advancing by ``step`` on every call."""

    def __init__(self, start: datetime = CLOCK_START, step: timedelta | None = None) -> None:
        self.current = start
        self.step = step if step is not None else timedelta(seconds=1)

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


@dataclass
class FakeRefresher:
    """Refresher that reports the collection file as-is, or fails on demand."""

    collection_path: Path
    media_dir: Path | None = None
    error: Exception | None = None
    calls: int = 0
    manifest_override: list[AssetEntry] | None = field(default=None)

    async def refresh(self) -> SyncResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        manifest = (
            self.manifest_override
            if self.manifest_override is not None
            else scan_media_manifest(self.media_dir)
        )
        return SyncResult(
            collection_path=self.collection_path,
            manifest=manifest,
            source_revision=f"rev-{self.calls}",
            sync_duration_ms=1,
        )


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    root = tmp_path / "data"
    root.mkdir()
    return root


@pytest.fixture
def collection_file(tmp_path: Path) -> Path:
    """A small valid collection with two decks."""
    return make_collection(
        tmp_path / "collection.anki2",
        decks={1: "Default", 2: "Japanese"},
        cards=[1, 2, 2],
        notes=3,
        revlog=5,
    )


@pytest.fixture
def test_settings(tmp_path: Path, data_root: Path, collection_file: Path) -> Settings:
    """Create test settings with temporary paths."""
    return Settings(
        _env_file=None,
        root=data_root,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        collection_path=collection_file,
        scheduler_enabled=False,
    )


@pytest.fixture
async def store(test_settings: Settings) -> AsyncGenerator[SqliteMetadataStore]:
    s = SqliteMetadataStore(test_settings.resolved_database_url())
    await s.init_schema()
    yield s
    await s.dispose()


@pytest.fixture
def repository(data_root: Path) -> BackupRepository:
    repo = BackupRepository(data_root)
    repo.ensure_layout()
    return repo


@pytest.fixture
def pointer(test_settings: Settings) -> ActivePointer:
    return ActivePointer(test_settings.pointer_path)


@pytest.fixture
def run_lock(test_settings: Settings) -> RunLock:
    return RunLock(test_settings.lock_path)


@pytest.fixture
def refresher(collection_file: Path) -> FakeRefresher:
    return FakeRefresher(collection_path=collection_file)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> BackupPolicy:
    return BackupPolicy(retention_days=90, retention_min_keep=1)


@pytest.fixture
def orchestrator(
    store: SqliteMetadataStore,
    repository: BackupRepository,
    pointer: ActivePointer,
    run_lock: RunLock,
    refresher: FakeRefresher,
    policy: BackupPolicy,
    clock: FakeClock,
) -> BackupOrchestrator:
    return BackupOrchestrator(
        store=store,
        repository=repository,
        pointer=pointer,
        run_lock=run_lock,
        refresher=refresher,
        policy=policy,
        clock=clock,
    )


async def create_test_app(settings: Settings) -> FastAPI:
    """Create an app with state wired the way the lifespan wires it.

    ASGITransport does not run the lifespan, so the work is done here.
    """
    app = create_app(settings)
    store = SqliteMetadataStore(settings.resolved_database_url())
    await store.init_schema()
    orchestrator = build_orchestrator(settings, store)
    await orchestrator.startup_recovery()
    app.state.store = store
    app.state.orchestrator = orchestrator
    app.state.repository = orchestrator.repository
    app.state.pointer = orchestrator.pointer
    app.state.scheduler = None
    return app


@pytest.fixture
async def app(test_settings: Settings) -> AsyncGenerator[FastAPI]:
    application = await create_test_app(test_settings)
    yield application
    await application.state.store.dispose()


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
