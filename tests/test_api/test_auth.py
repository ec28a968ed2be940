"""Tests for the optional static API token."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from tests.conftest import create_test_app

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from ankibackup.config import Settings

TOKEN = "s3cret-admin-token"


@pytest.fixture
async def token_client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    settings = test_settings.model_copy(update={"api_token": TOKEN})
    app = await create_test_app(settings)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        await app.state.store.dispose()


class TestApiToken:
    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("GET", "/api/snapshots"),
            ("GET", "/api/pointer"),
            ("GET", "/api/runs"),
            ("POST", "/api/runs"),
            ("GET", "/api/rollbacks"),
            ("POST", "/api/snapshots/2020-01-01T00-00-00Z/rollback"),
        ],
    )
    async def test_requires_token(self, token_client: AsyncClient, method: str, path: str) -> None:
        resp = await token_client.request(method, path)
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    async def test_wrong_token(self, token_client: AsyncClient) -> None:
        resp = await token_client.get(
            "/api/snapshots", headers={"Authorization": "Bearer wrong"}
        )
        assert resp.status_code == 401

    async def test_correct_token(self, token_client: AsyncClient) -> None:
        resp = await token_client.get(
            "/api/snapshots", headers={"Authorization": f"Bearer {TOKEN}"}
        )
        assert resp.status_code == 200

    async def test_health_is_public(self, token_client: AsyncClient) -> None:
        resp = await token_client.get("/api/health")
        assert resp.status_code == 200

    async def test_no_token_configured_is_open(self, client: AsyncClient) -> None:
        resp = await client.get("/api/snapshots")
        assert resp.status_code == 200

    async def test_rejected_request_has_no_side_effects(self, token_client: AsyncClient) -> None:
        await token_client.post("/api/runs")
        resp = await token_client.get(
            "/api/runs", headers={"Authorization": f"Bearer {TOKEN}"}
        )
        assert resp.json() == []
