"""Tests for source refresh."""

from __future__ import annotations

import asyncio
import shlex
import sys
import time
from typing import TYPE_CHECKING

import pytest

from ankibackup.config import Settings
from ankibackup.exceptions import SyncFailure
from ankibackup.services.fingerprint import AssetEntry
from ankibackup.services.sync_service import (
    CommandRefresher,
    FileRefresher,
    build_refresher,
    scan_media_manifest,
)

if TYPE_CHECKING:
    from pathlib import Path


def _python(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


class TestMediaManifest:
    def test_lists_files_recursively(self, tmp_path: Path) -> None:
        media = tmp_path / "media"
        (media / "sub").mkdir(parents=True)
        (media / "a.png").write_bytes(b"12345")
        (media / "sub" / "b.mp3").write_bytes(b"1")
        entries = sorted(scan_media_manifest(media), key=lambda e: e.name)
        assert entries == [AssetEntry("a.png", 5), AssetEntry("sub/b.mp3", 1)]

    def test_skips_hidden(self, tmp_path: Path) -> None:
        media = tmp_path / "media"
        (media / ".cache").mkdir(parents=True)
        (media / ".cache" / "x").write_bytes(b"x")
        (media / ".DS_Store").write_bytes(b"x")
        assert scan_media_manifest(media) == []

    def test_missing_dir(self, tmp_path: Path) -> None:
        assert scan_media_manifest(tmp_path / "nope") == []
        assert scan_media_manifest(None) == []


class TestFileRefresher:
    async def test_describes_collection(self, collection_file: Path, tmp_path: Path) -> None:
        media = tmp_path / "media"
        media.mkdir()
        (media / "a.png").write_bytes(b"abc")

        result = await FileRefresher(collection_file, media).refresh()

        assert result.collection_path == collection_file
        assert result.manifest == [AssetEntry("a.png", 3)]
        assert result.source_revision is not None
        assert result.source_revision.endswith(f":{collection_file.stat().st_size}")
        assert result.sync_duration_ms is not None

    async def test_missing_collection(self, tmp_path: Path) -> None:
        with pytest.raises(SyncFailure, match="not found"):
            await FileRefresher(tmp_path / "missing.anki2").refresh()


class TestCommandRefresher:
    async def test_success(self, collection_file: Path) -> None:
        refresher = CommandRefresher(_python("print('synced')"), collection_file)
        result = await refresher.refresh()
        assert result.collection_path == collection_file

    async def test_non_zero_exit_carries_stderr(self, collection_file: Path) -> None:
        code = "import sys; sys.stderr.write('auth rejected'); sys.exit(3)"
        refresher = CommandRefresher(_python(code), collection_file)
        with pytest.raises(SyncFailure, match="status 3: auth rejected"):
            await refresher.refresh()

    async def test_missing_executable(self, collection_file: Path) -> None:
        refresher = CommandRefresher("/nonexistent/anki-sync --now", collection_file)
        with pytest.raises(SyncFailure, match="Failed to start"):
            await refresher.refresh()

    async def test_cancellation_kills_child(self, collection_file: Path) -> None:
        refresher = CommandRefresher(_python("import time; time.sleep(30)"), collection_file)
        started = time.monotonic()
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(refresher.refresh(), timeout=0.5)
        assert time.monotonic() - started < 10

    def test_empty_command(self, collection_file: Path) -> None:
        with pytest.raises(ValueError):
            CommandRefresher("   ", collection_file)


class TestBuildRefresher:
    def test_file_refresher_by_default(self, test_settings: Settings) -> None:
        assert isinstance(build_refresher(test_settings), FileRefresher)

    def test_command_refresher_when_configured(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"sync_command": "anki-sync --profile main"})
        refresher = build_refresher(settings)
        assert isinstance(refresher, CommandRefresher)
        assert refresher.argv == ["anki-sync", "--profile", "main"]

    def test_requires_collection_path(self) -> None:
        with pytest.raises(ValueError):
            build_refresher(Settings(_env_file=None))
