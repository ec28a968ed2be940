"""On-disk snapshot repository.

Layout under the data root::

    backups/<id>/collection.anki2
    backups/<id>/metadata.json
    backups/.staging-<id>-<random>/     (hidden, never listed)

A snapshot directory only ever becomes visible through a single atomic
rename of a fully written and flushed staging directory.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ankibackup.exceptions import Corrupt, NotFound, StorageFailure
from ankibackup.filesystem.atomic import durable_rename, fsync_directory, fsync_tree
from ankibackup.services.datetime_service import format_iso, parse_datetime
from ankibackup.services.fingerprint import AssetEntry
from ankibackup.services.stats_service import SnapshotStats

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from datetime import datetime
    from typing import BinaryIO

logger = logging.getLogger(__name__)

PAYLOAD_NAME = "collection.anki2"
SIDECAR_NAME = "metadata.json"
STAGING_PREFIX = ".staging-"

_SNAPSHOT_ID_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}Z(?:-\d+)?$")
_READ_CHUNK = 64 * 1024


def is_valid_snapshot_id(snapshot_id: str) -> bool:
    """Return True if ``snapshot_id`` has the ``YYYY-MM-DDTHH-MM-SSZ[-N]`` shape."""
    return bool(_SNAPSHOT_ID_RE.match(snapshot_id))


def snapshot_sort_key(snapshot_id: str) -> tuple[str, int]:
    """Order ids by timestamp, then numerically by collision suffix."""
    base, _, suffix = snapshot_id.partition("Z-")
    if not suffix:
        return snapshot_id, 0
    return f"{base}Z", int(suffix)


@dataclass
class SnapshotSidecar:
    """Self-description stored next to the payload.

    The directory name is the snapshot id; together they are enough to rebuild
    a metadata row.
    """

    content_hash: str
    created_at: datetime
    size_bytes: int
    stats: SnapshotStats | None = None
    source_revision: str | None = None
    sync_duration_ms: int | None = None
    manifest: list[AssetEntry] = field(default_factory=list)

    def to_json(self) -> str:
        data: dict[str, Any] = {
            "content_hash": self.content_hash,
            "created_at": format_iso(self.created_at),
            "size_bytes": self.size_bytes,
            "stats": self.stats.to_dict() if self.stats is not None else None,
            "source_revision": self.source_revision,
            "sync_duration_ms": self.sync_duration_ms,
            "manifest": [{"name": e.name, "size": e.size} for e in self.manifest],
        }
        return json.dumps(data, indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> SnapshotSidecar:
        data = json.loads(raw)
        stats = data.get("stats")
        return cls(
            content_hash=str(data["content_hash"]),
            created_at=parse_datetime(data["created_at"]),
            size_bytes=int(data["size_bytes"]),
            stats=SnapshotStats.from_dict(stats) if stats else None,
            source_revision=data.get("source_revision"),
            sync_duration_ms=data.get("sync_duration_ms"),
            manifest=[
                AssetEntry(name=str(e["name"]), size=int(e["size"]))
                for e in data.get("manifest", [])
            ],
        )


class StagingHandle:
    """A hidden directory where one snapshot is assembled before commit."""

    def __init__(self, snapshot_id: str, path: Path) -> None:
        self.snapshot_id = snapshot_id
        self.path = path

    @property
    def payload_path(self) -> Path:
        return self.path / PAYLOAD_NAME

    def write_payload(self, source: Path | bytes) -> int:
        """Copy the collection into staging. Returns the payload size in bytes."""
        try:
            if isinstance(source, bytes):
                self.payload_path.write_bytes(source)
            else:
                shutil.copyfile(source, self.payload_path)
            return self.payload_path.stat().st_size
        except OSError as exc:
            raise StorageFailure(f"Failed to stage payload: {exc}") from exc

    def write_sidecar(self, sidecar: SnapshotSidecar) -> None:
        try:
            (self.path / SIDECAR_NAME).write_text(sidecar.to_json(), encoding="utf-8")
        except OSError as exc:
            raise StorageFailure(f"Failed to stage sidecar: {exc}") from exc


class BackupRepository:
    """Durable, atomically published snapshot directories."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.backups_dir = root / "backups"

    def ensure_layout(self) -> None:
        self.backups_dir.mkdir(parents=True, exist_ok=True)

    def snapshot_dir(self, snapshot_id: str) -> Path:
        if not is_valid_snapshot_id(snapshot_id):
            raise NotFound(f"Invalid snapshot id: {snapshot_id!r}")
        return self.backups_dir / snapshot_id

    def storage_path(self, snapshot_id: str) -> str:
        """Return the snapshot directory relative to the data root."""
        return f"backups/{snapshot_id}"

    def exists(self, snapshot_id: str) -> bool:
        return is_valid_snapshot_id(snapshot_id) and (self.backups_dir / snapshot_id).is_dir()

    # -- write path --------------------------------------------------------

    def stage(self, snapshot_id: str) -> StagingHandle:
        """Create a hidden staging directory for ``snapshot_id``."""
        if not is_valid_snapshot_id(snapshot_id):
            raise StorageFailure(f"Invalid snapshot id: {snapshot_id!r}")
        path = self.backups_dir / f"{STAGING_PREFIX}{snapshot_id}-{secrets.token_hex(4)}"
        try:
            self.backups_dir.mkdir(parents=True, exist_ok=True)
            path.mkdir()
        except OSError as exc:
            raise StorageFailure(f"Failed to create staging directory: {exc}") from exc
        logger.debug("Staging snapshot %s in %s", snapshot_id, path.name)
        return StagingHandle(snapshot_id, path)

    def commit(self, handle: StagingHandle) -> Path:
        """Flush the staging tree and publish it with a single rename."""
        destination = self.backups_dir / handle.snapshot_id
        try:
            fsync_tree(handle.path)
            durable_rename(handle.path, destination)
        except OSError as exc:
            raise StorageFailure(
                f"Failed to commit snapshot {handle.snapshot_id}: {exc}"
            ) from exc
        logger.info("Committed snapshot directory %s", destination.name)
        return destination

    def discard(self, handle: StagingHandle) -> None:
        """Remove a staging directory. Safe to call more than once."""
        shutil.rmtree(handle.path, ignore_errors=True)

    def rename_committed(self, old_id: str, new_id: str) -> Path:
        """Move a committed snapshot directory that has no metadata row yet."""
        src = self.snapshot_dir(old_id)
        dst = self.snapshot_dir(new_id)
        try:
            durable_rename(src, dst)
        except OSError as exc:
            raise StorageFailure(f"Failed to rename snapshot {old_id} to {new_id}: {exc}") from exc
        logger.warning("Renamed committed snapshot %s to %s", old_id, new_id)
        return dst

    def delete(self, snapshot_id: str) -> None:
        """Remove a committed snapshot directory. Missing directories are ignored."""
        path = self.snapshot_dir(snapshot_id)
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
            fsync_directory(self.backups_dir)
        except OSError as exc:
            raise StorageFailure(f"Failed to delete snapshot {snapshot_id}: {exc}") from exc

    # -- read path ---------------------------------------------------------

    def payload_path(self, snapshot_id: str) -> Path:
        path = self.snapshot_dir(snapshot_id) / PAYLOAD_NAME
        if not self.exists(snapshot_id):
            raise NotFound(f"Snapshot {snapshot_id} not found")
        return path

    def open_payload(self, snapshot_id: str) -> BinaryIO:
        path = self.payload_path(snapshot_id)
        try:
            return open(path, "rb")  # noqa: SIM115
        except FileNotFoundError as exc:
            raise Corrupt(f"Snapshot {snapshot_id} payload is missing") from exc
        except OSError as exc:
            raise StorageFailure(f"Failed to open snapshot {snapshot_id}: {exc}") from exc

    def read(self, snapshot_id: str) -> Iterator[bytes]:
        """Stream the payload bytes of a committed snapshot.

        ``NotFound`` and ``Corrupt`` are raised eagerly, before the first chunk.
        """
        f = self.open_payload(snapshot_id)
        return _iter_chunks(f)

    def read_sidecar(self, snapshot_id: str) -> SnapshotSidecar:
        path = self.snapshot_dir(snapshot_id) / SIDECAR_NAME
        if not self.exists(snapshot_id):
            raise NotFound(f"Snapshot {snapshot_id} not found")
        try:
            return SnapshotSidecar.from_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise Corrupt(f"Snapshot {snapshot_id} sidecar is unreadable: {exc}") from exc

    def verify(self, snapshot_id: str) -> None:
        """Raise ``Corrupt`` unless payload and sidecar are both present and readable."""
        if not self.exists(snapshot_id):
            raise Corrupt(f"Snapshot {snapshot_id} directory is missing")
        if not (self.backups_dir / snapshot_id / PAYLOAD_NAME).is_file():
            raise Corrupt(f"Snapshot {snapshot_id} payload is missing")
        self.read_sidecar(snapshot_id)

    def list_committed(self) -> list[str]:
        """Return ids of visible snapshot directories, oldest first."""
        if not self.backups_dir.is_dir():
            return []
        return sorted(
            (
                entry.name
                for entry in self.backups_dir.iterdir()
                if entry.is_dir() and is_valid_snapshot_id(entry.name)
            ),
            key=snapshot_sort_key,
        )

    # -- recovery ----------------------------------------------------------

    def sweep_staging(self) -> list[str]:
        """Remove staging directories left behind by an interrupted run."""
        if not self.backups_dir.is_dir():
            return []
        removed: list[str] = []
        for entry in sorted(self.backups_dir.iterdir()):
            if entry.is_dir() and entry.name.startswith(STAGING_PREFIX):
                shutil.rmtree(entry, ignore_errors=True)
                removed.append(entry.name)
        if removed:
            logger.info("Removed %d orphaned staging directories", len(removed))
        return removed

    def sweep_orphans(self, known_ids: Iterable[str]) -> list[str]:
        """Remove committed directories that have no metadata row."""
        known = set(known_ids)
        removed: list[str] = []
        for snapshot_id in self.list_committed():
            if snapshot_id in known:
                continue
            shutil.rmtree(self.backups_dir / snapshot_id, ignore_errors=True)
            removed.append(snapshot_id)
            logger.warning("Removed snapshot directory %s with no metadata row", snapshot_id)
        return removed


def _iter_chunks(f: BinaryIO) -> Iterator[bytes]:
    with f:
        yield from iter(lambda: f.read(_READ_CHUNK), b"")
