"""Source refresh: bring the local collection file up to date before a tick.

The upstream sync protocol is not implemented here. A deployment either
configures an external sync command (``ANKI_BACKUP_SYNC_COMMAND``), which is
run before every tick, or none, in which case the collection file is read in
place as something else keeps it current.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ankibackup.exceptions import SyncFailure
from ankibackup.services.fingerprint import AssetEntry

if TYPE_CHECKING:
    from ankibackup.config import Settings

logger = logging.getLogger(__name__)

_STDERR_TAIL = 500


@dataclass
class SyncResult:
    """Where the refreshed collection lives and what came with it."""

    collection_path: Path
    manifest: list[AssetEntry] = field(default_factory=list)
    source_revision: str | None = None
    sync_duration_ms: int | None = None


class SourceRefresher(Protocol):
    async def refresh(self) -> SyncResult: ...


def scan_media_manifest(media_dir: Path | None) -> list[AssetEntry]:
    """List regular files under ``media_dir`` as ``(relative name, size)`` entries.

    Hidden files are skipped. A missing directory yields an empty manifest.
    """
    if media_dir is None or not media_dir.is_dir():
        return []
    entries: list[AssetEntry] = []
    for path in media_dir.rglob("*"):
        rel = path.relative_to(media_dir)
        if any(part.startswith(".") for part in rel.parts) or not path.is_file():
            continue
        entries.append(AssetEntry(name=rel.as_posix(), size=path.stat().st_size))
    return entries


def _source_revision(collection_path: Path) -> str:
    stat = collection_path.stat()
    return f"{stat.st_mtime_ns}:{stat.st_size}"


async def _describe_source(
    collection_path: Path, media_dir: Path | None, started: float
) -> SyncResult:
    if not collection_path.is_file():
        raise SyncFailure(f"Collection file not found: {collection_path}")
    try:
        manifest = await asyncio.to_thread(scan_media_manifest, media_dir)
        revision = _source_revision(collection_path)
    except OSError as exc:
        raise SyncFailure(f"Failed to inspect source collection: {exc}") from exc
    return SyncResult(
        collection_path=collection_path,
        manifest=manifest,
        source_revision=revision,
        sync_duration_ms=int((time.monotonic() - started) * 1000),
    )


class FileRefresher:
    """No upstream step: the collection file is read where it is."""

    def __init__(self, collection_path: Path, media_dir: Path | None = None) -> None:
        self.collection_path = collection_path
        self.media_dir = media_dir

    async def refresh(self) -> SyncResult:
        return await _describe_source(self.collection_path, self.media_dir, time.monotonic())


class CommandRefresher:
    """Run an external sync command, then describe the refreshed collection.

    The child is killed if the awaiting task is cancelled, which is how the
    orchestrator's sync timeout takes effect.
    """

    def __init__(
        self, command: str, collection_path: Path, media_dir: Path | None = None
    ) -> None:
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("Sync command must not be empty")
        self.collection_path = collection_path
        self.media_dir = media_dir

    async def refresh(self) -> SyncResult:
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SyncFailure(f"Failed to start sync command {self.argv[0]!r}: {exc}") from exc

        try:
            _stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                logger.warning("Killing sync command %s (pid %d)", self.argv[0], proc.pid)
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip()[-_STDERR_TAIL:]
            raise SyncFailure(f"Sync command exited with status {proc.returncode}: {tail}")
        logger.debug("Sync command finished in %.2fs", time.monotonic() - started)
        return await _describe_source(self.collection_path, self.media_dir, started)


def build_refresher(settings: Settings) -> SourceRefresher:
    """Select the refresher for the configured source."""
    if settings.collection_path is None:
        raise ValueError("collection_path is not configured")
    if settings.sync_command:
        return CommandRefresher(settings.sync_command, settings.collection_path, settings.media_dir)
    return FileRefresher(settings.collection_path, settings.media_dir)
