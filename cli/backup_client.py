"""CLI admin client for the Anki backup daemon HTTP API."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

DEFAULT_SERVER = "http://127.0.0.1:8088"
SERVER_ENV = "ANKI_BACKUP_SERVER"
TOKEN_ENV = "ANKI_BACKUP_API_TOKEN"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


class BackupClient:
    """Thin client over the daemon's ``/api`` endpoints."""

    def __init__(
        self,
        server_url: str,
        token: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.Client(
            base_url=self.server_url,
            headers=headers,
            timeout=60.0,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> BackupClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _get_json(self, path: str, **params: Any) -> Any:
        resp = self.client.get(path, params=params or None)
        resp.raise_for_status()
        return resp.json()

    def health(self) -> dict[str, Any]:
        result: dict[str, Any] = self._get_json("/api/health")
        return result

    def list_snapshots(self) -> dict[str, Any]:
        result: dict[str, Any] = self._get_json("/api/snapshots")
        return result

    def get_snapshot(self, snapshot_id: str) -> dict[str, Any]:
        result: dict[str, Any] = self._get_json(f"/api/snapshots/{snapshot_id}")
        return result

    def trigger_run(self) -> dict[str, Any]:
        """Ask for a manual tick. Raises ``httpx.HTTPStatusError`` (409) when busy."""
        resp = self.client.post("/api/runs", timeout=None)
        resp.raise_for_status()
        result: dict[str, Any] = resp.json()
        return result

    def rollback(self, snapshot_id: str) -> dict[str, Any]:
        resp = self.client.post(f"/api/snapshots/{snapshot_id}/rollback")
        resp.raise_for_status()
        result: dict[str, Any] = resp.json()
        return result

    def download(self, snapshot_id: str, output: Path) -> int:
        """Stream a snapshot payload into ``output``. Returns the number of bytes written.

        The file is written under a temporary name and renamed when complete.
        """
        partial = output.with_name(f".{output.name}.part")
        written = 0
        try:
            with self.client.stream("GET", f"/api/snapshots/{snapshot_id}/download") as resp:
                resp.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in resp.iter_bytes():
                        f.write(chunk)
                        written += len(chunk)
            os.replace(partial, output)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return written


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def _describe_error(exc: httpx.HTTPStatusError) -> str:
    try:
        detail = exc.response.json().get("detail")
    except ValueError:
        detail = exc.response.text
    return f"{exc.response.status_code}: {detail}"


def main(argv: list[str] | None = None, *, transport: httpx.BaseTransport | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="anki-backup",
        description="Inspect and control an Anki backup daemon",
    )
    parser.add_argument(
        "--server", "-s", help=f"Daemon URL (default: ${SERVER_ENV} or {DEFAULT_SERVER})"
    )
    parser.add_argument("--token", help=f"API token (default: ${TOKEN_ENV})")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("status", help="Show daemon health")
    subparsers.add_parser("list", help="List snapshots")
    show = subparsers.add_parser("show", help="Show one snapshot")
    show.add_argument("snapshot_id")
    subparsers.add_parser("run", help="Run a backup tick now")
    rollback = subparsers.add_parser("rollback", help="Make a snapshot the active one")
    rollback.add_argument("snapshot_id")
    download = subparsers.add_parser("download", help="Download a snapshot payload")
    download.add_argument("snapshot_id")
    download.add_argument("--output", "-o", required=True, help="Destination file")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    try:
        server_url = validate_server_url(
            args.server or os.environ.get(SERVER_ENV, DEFAULT_SERVER), args.allow_insecure_http
        )
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    token = args.token or os.environ.get(TOKEN_ENV)

    with BackupClient(server_url, token, transport=transport) as client:
        try:
            _dispatch(client, args)
        except httpx.HTTPStatusError as exc:
            print(f"Error: {_describe_error(exc)}")
            sys.exit(1)
        except httpx.HTTPError as exc:
            print(f"Error: cannot reach {server_url}: {exc}")
            sys.exit(1)


def _dispatch(client: BackupClient, args: argparse.Namespace) -> None:
    if args.command == "status":
        health = client.health()
        print(f"Status:    {health['status']}")
        print(f"Database:  {health['database']}")
        print(f"Scheduler: {health['scheduler']}")
        print(f"Run state: {health['run_state']}")
        print(f"Active:    {health.get('active_snapshot_id') or '-'}")
        if health.get("pointer_issue"):
            print(f"  ! {health['pointer_issue']}")
        for snapshot_id in health.get("corrupt_snapshots", []):
            print(f"  ! corrupt snapshot {snapshot_id}")

    elif args.command == "list":
        listing = client.list_snapshots()
        for s in listing["snapshots"]:
            marker = "*" if s["is_active"] else " "
            cards = s["total_cards"] if s["total_cards"] is not None else "-"
            print(f"{marker} {s['id']}  {s['size_bytes']:>12}  cards={cards}")

    elif args.command == "show":
        detail = client.get_snapshot(args.snapshot_id)
        for key in ("id", "created_at", "content_hash", "size_bytes", "source_revision"):
            print(f"{key}: {detail.get(key)}")
        stats = detail.get("stats")
        if stats:
            print(f"cards: {stats['total_cards']}  notes: {stats['total_notes']}")
            for deck in stats["deck_stats"]:
                print(f"  {deck['deck_name']}: {deck['card_count']}")

    elif args.command == "run":
        result = client.trigger_run()
        line = f"{result['outcome']}"
        if result.get("snapshot_id"):
            line += f" {result['snapshot_id']}"
        if result.get("reason"):
            line += f" ({result['reason']})"
        print(line)
        if result["outcome"] == "failed":
            sys.exit(1)

    elif args.command == "rollback":
        result = client.rollback(args.snapshot_id)
        print(
            f"Active pointer: {result.get('previous_snapshot_id') or '-'}"
            f" -> {result['target_snapshot_id']}"
        )

    elif args.command == "download":
        output = Path(args.output)
        written = client.download(args.snapshot_id, output)
        print(f"Wrote {written} bytes to {output}")


if __name__ == "__main__":
    main()
