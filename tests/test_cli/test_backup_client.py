"""Tests for the admin CLI client."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from cli.backup_client import BackupClient, main, validate_server_url

if TYPE_CHECKING:
    from pathlib import Path

SNAPSHOT_ID = "2026-03-01T09-00-01Z"
PAYLOAD = b"SQLite format 3\x00" + b"\x01" * 100_000


def _json(data: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(data).encode())


class FakeDaemon:
    """Routes requests the way the daemon API does."""

    def __init__(self, busy: bool = False) -> None:
        self.busy = busy
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/health":
            return _json(
                {
                    "status": "degraded",
                    "database": "ok",
                    "scheduler": "running",
                    "run_state": "idle",
                    "active_snapshot_id": SNAPSHOT_ID,
                    "pointer_issue": None,
                    "corrupt_snapshots": ["2026-01-01T00-00-00Z"],
                }
            )
        if path == "/api/snapshots":
            return _json(
                {
                    "snapshots": [
                        {
                            "id": SNAPSHOT_ID,
                            "size_bytes": len(PAYLOAD),
                            "total_cards": 12,
                            "is_active": True,
                        }
                    ],
                    "active_snapshot_id": SNAPSHOT_ID,
                }
            )
        if path == "/api/runs" and request.method == "POST":
            if self.busy:
                return _json({"detail": "A backup run is already in progress"}, 409)
            return _json({"outcome": "created", "snapshot_id": SNAPSHOT_ID, "reason": None})
        if path == f"/api/snapshots/{SNAPSHOT_ID}/download":
            return httpx.Response(200, content=PAYLOAD)
        if path == f"/api/snapshots/{SNAPSHOT_ID}/rollback":
            return _json(
                {
                    "target_snapshot_id": SNAPSHOT_ID,
                    "previous_snapshot_id": "2026-03-02T09-00-00Z",
                    "result": "success",
                }
            )
        if path == f"/api/snapshots/{SNAPSHOT_ID}":
            return _json(
                {
                    "id": SNAPSHOT_ID,
                    "created_at": "2026-03-01T09:00:01+00:00",
                    "content_hash": "ab" * 32,
                    "size_bytes": len(PAYLOAD),
                    "source_revision": None,
                    "stats": {
                        "total_cards": 12,
                        "total_notes": 10,
                        "deck_stats": [{"deck_name": "Default", "card_count": 12}],
                    },
                }
            )
        return _json({"detail": f"Snapshot {path.rsplit('/', 1)[-1]} not found"}, 404)


class TestValidateServerUrl:
    def test_rejects_insecure_http_for_remote_hosts(self) -> None:
        with pytest.raises(ValueError, match="HTTPS is required"):
            validate_server_url("http://example.com")

    def test_allows_http_for_localhost(self) -> None:
        assert validate_server_url("http://127.0.0.1:8088/") == "http://127.0.0.1:8088"

    def test_allows_insecure_http_when_flag_enabled(self) -> None:
        assert (
            validate_server_url("http://backup.lan:8088", allow_insecure_http=True)
            == "http://backup.lan:8088"
        )

    def test_rejects_missing_scheme(self) -> None:
        with pytest.raises(ValueError, match="scheme and host"):
            validate_server_url("backup.lan")


class TestBackupClient:
    def test_sends_bearer_token(self) -> None:
        daemon = FakeDaemon()
        with BackupClient(
            "http://127.0.0.1:8088", "tok", transport=httpx.MockTransport(daemon)
        ) as client:
            client.list_snapshots()
        assert daemon.requests[0].headers["authorization"] == "Bearer tok"

    def test_no_token_no_header(self) -> None:
        daemon = FakeDaemon()
        with BackupClient("http://127.0.0.1:8088", transport=httpx.MockTransport(daemon)) as c:
            c.health()
        assert "authorization" not in daemon.requests[0].headers

    def test_download_writes_file(self, tmp_path: Path) -> None:
        output = tmp_path / "restore.anki2"
        with BackupClient(
            "http://127.0.0.1:8088", transport=httpx.MockTransport(FakeDaemon())
        ) as client:
            written = client.download(SNAPSHOT_ID, output)
        assert written == len(PAYLOAD)
        assert output.read_bytes() == PAYLOAD
        assert list(tmp_path.iterdir()) == [output]

    def test_failed_download_leaves_nothing(self, tmp_path: Path) -> None:
        output = tmp_path / "restore.anki2"
        with BackupClient(
            "http://127.0.0.1:8088", transport=httpx.MockTransport(FakeDaemon())
        ) as client, pytest.raises(httpx.HTTPStatusError):
            client.download("2020-01-01T00-00-00Z", output)
        assert list(tmp_path.iterdir()) == []

    def test_busy_run_raises(self) -> None:
        with BackupClient(
            "http://127.0.0.1:8088", transport=httpx.MockTransport(FakeDaemon(busy=True))
        ) as client, pytest.raises(httpx.HTTPStatusError) as exc_info:
            client.trigger_run()
        assert exc_info.value.response.status_code == 409


class TestMain:
    def _main(self, argv: list[str], daemon: FakeDaemon | None = None) -> None:
        main(argv, transport=httpx.MockTransport(daemon or FakeDaemon()))

    def test_status(self, capsys: pytest.CaptureFixture[str]) -> None:
        self._main(["status"])
        out = capsys.readouterr().out
        assert "Status:    degraded" in out
        assert f"Active:    {SNAPSHOT_ID}" in out
        assert "corrupt snapshot 2026-01-01T00-00-00Z" in out

    def test_list(self, capsys: pytest.CaptureFixture[str]) -> None:
        self._main(["list"])
        out = capsys.readouterr().out
        assert out.startswith(f"* {SNAPSHOT_ID}")
        assert "cards=12" in out

    def test_show(self, capsys: pytest.CaptureFixture[str]) -> None:
        self._main(["show", SNAPSHOT_ID])
        out = capsys.readouterr().out
        assert f"id: {SNAPSHOT_ID}" in out
        assert "Default: 12" in out

    def test_run(self, capsys: pytest.CaptureFixture[str]) -> None:
        self._main(["run"])
        assert capsys.readouterr().out.strip() == f"created {SNAPSHOT_ID}"

    def test_run_busy_exits_non_zero(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            self._main(["run"], FakeDaemon(busy=True))
        assert exc_info.value.code == 1
        assert "409: A backup run is already in progress" in capsys.readouterr().out

    def test_rollback(self, capsys: pytest.CaptureFixture[str]) -> None:
        self._main(["rollback", SNAPSHOT_ID])
        out = capsys.readouterr().out
        assert f"2026-03-02T09-00-00Z -> {SNAPSHOT_ID}" in out

    def test_show_unknown(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit):
            self._main(["show", "2020-01-01T00-00-00Z"])
        assert "404: Snapshot 2020-01-01T00-00-00Z not found" in capsys.readouterr().out

    def test_download(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        output = tmp_path / "out.anki2"
        self._main(["download", SNAPSHOT_ID, "-o", str(output)])
        assert output.read_bytes() == PAYLOAD
        assert f"Wrote {len(PAYLOAD)} bytes" in capsys.readouterr().out

    def test_insecure_server_rejected(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit):
            self._main(["--server", "http://backup.example.com", "status"])
        assert "HTTPS is required" in capsys.readouterr().out

    def test_server_from_environment(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        daemon = FakeDaemon()
        monkeypatch.setenv("ANKI_BACKUP_SERVER", "https://backup.example.com")
        monkeypatch.setenv("ANKI_BACKUP_API_TOKEN", "from-env")
        self._main(["status"], daemon)
        request = daemon.requests[0]
        assert request.url.host == "backup.example.com"
        assert request.headers["authorization"] == "Bearer from-env"

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        self._main([])
        assert "usage: anki-backup" in capsys.readouterr().out
