"""Active pointer: which snapshot is the current restore target."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ankibackup.exceptions import Corrupt, StorageFailure
from ankibackup.filesystem.atomic import atomic_write_bytes, fsync_directory
from ankibackup.services.datetime_service import format_iso, now_utc, parse_datetime

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointerState:
    """Contents of ``state/current-pointer.json``."""

    snapshot_id: str
    storage_path: str
    updated_at: datetime


class ActivePointer:
    """A single JSON file swapped by write-then-rename.

    A missing file means the pointer is unset. Readers always see either the
    previous or the new value, never a partial write.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> PointerState | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageFailure(f"Failed to read active pointer: {exc}") from exc
        try:
            data = json.loads(raw)
            return PointerState(
                snapshot_id=str(data["snapshot_id"]),
                storage_path=str(data["storage_path"]),
                updated_at=parse_datetime(data["updated_at"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise Corrupt(f"Active pointer file is unreadable: {exc}") from exc

    def write(self, snapshot_id: str, storage_path: str) -> PointerState:
        state = PointerState(
            snapshot_id=snapshot_id, storage_path=storage_path, updated_at=now_utc()
        )
        payload = {
            "snapshot_id": state.snapshot_id,
            "storage_path": state.storage_path,
            "updated_at": format_iso(state.updated_at),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_bytes(self.path, json.dumps(payload, indent=2).encode("utf-8"))
        except OSError as exc:
            raise StorageFailure(f"Failed to write active pointer: {exc}") from exc
        logger.info("Active pointer now references %s", snapshot_id)
        return state

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
            if self.path.parent.is_dir():
                fsync_directory(self.path.parent)
        except OSError as exc:
            raise StorageFailure(f"Failed to clear active pointer: {exc}") from exc
