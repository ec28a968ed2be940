"""Tests for the daemon's one-shot commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from ankibackup.main import app, cli_entry
from tests.conftest import make_collection

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from ankibackup.config import Settings


@pytest.fixture
def daemon_settings(test_settings: Settings) -> Iterator[Settings]:
    original = app.state.settings
    app.state.settings = test_settings
    with patch("ankibackup.main._configure_logging"):
        yield test_settings
    app.state.settings = original


def _run_cli(argv: list[str], capsys: pytest.CaptureFixture[str]) -> tuple[int, dict]:
    with pytest.raises(SystemExit) as exc_info:
        cli_entry(argv)
    out = capsys.readouterr().out.strip().splitlines()
    return int(exc_info.value.code or 0), json.loads(out[-1])


class TestRunOnce:
    def test_creates_then_skips(
        self,
        daemon_settings: Settings,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        code, first = _run_cli(["run-once"], capsys)
        assert code == 0
        assert first["outcome"] == "created"

        code, second = _run_cli(["run-once"], capsys)
        assert code == 0
        assert second["outcome"] == "skipped"
        assert second["reason"] == "unchanged"
        assert (daemon_settings.backups_dir / first["snapshot_id"]).is_dir()

    def test_failure_exit_code(
        self,
        daemon_settings: Settings,
        collection_file: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        collection_file.unlink()
        code, result = _run_cli(["run-once"], capsys)
        assert code == 1
        assert result["reason"] == "sync_error"

    def test_invalid_configuration(self, daemon_settings: Settings) -> None:
        app.state.settings = daemon_settings.model_copy(update={"collection_path": None})
        with pytest.raises(SystemExit) as exc_info:
            cli_entry(["run-once"])
        assert exc_info.value.code == 1


class TestRebuildMetadata:
    def test_rebuilds_from_directories(
        self,
        daemon_settings: Settings,
        collection_file: Path,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        _, first = _run_cli(["run-once"], capsys)
        make_collection(collection_file, cards=[2])
        _, second = _run_cli(["run-once"], capsys)
        for name in ("test.db", "test.db-wal", "test.db-shm"):
            (tmp_path / name).unlink(missing_ok=True)

        code, report = _run_cli(["rebuild-metadata"], capsys)

        assert code == 0
        assert report["inserted"] == [first["snapshot_id"], second["snapshot_id"]]
        assert report["failed"] == []
