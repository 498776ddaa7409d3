"""Integration tests for the admin-only user endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tests.conftest import ADMIN_HEADERS, create_test_client

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from httpx import AsyncClient

    from backend.config import Settings

CAROL_HEADERS = {"X-Username": "carol", "X-Password": "carolpass"}


@pytest.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    test_settings.enable_versioning = False
    async with create_test_client(test_settings) as ac:
        yield ac


async def _create(client: AsyncClient, name: str, password: str, **extra: object) -> int:
    resp = await client.post(
        "/api/users/create",
        json={"name": name, "password": password, **extra},
        headers=ADMIN_HEADERS,
    )
    return resp.status_code


class TestUserAdmin:
    @pytest.mark.asyncio
    async def test_create_and_list(self, client: AsyncClient) -> None:
        assert await _create(client, "carol", "carolpass") == 200
        assert await _create(client, "dave", "davepass", isAdmin=True) == 200
        resp = await client.get("/api/users/list", headers=ADMIN_HEADERS)
        assert resp.json()["users"] == [
            {"name": "admin", "is_admin": True},
            {"name": "carol", "is_admin": False},
            {"name": "dave", "is_admin": True},
        ]

    @pytest.mark.asyncio
    async def test_duplicate_user(self, client: AsyncClient) -> None:
        await _create(client, "carol", "carolpass")
        assert await _create(client, "carol", "other") == 409

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, client: AsyncClient) -> None:
        await _create(client, "carol", "carolpass")
        resp = await client.get("/api/users/list", headers=CAROL_HEADERS)
        assert resp.status_code == 403
        resp = await client.get("/api/users/list")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_update_password(self, client: AsyncClient) -> None:
        await _create(client, "carol", "carolpass")
        resp = await client.post(
            "/api/users/update",
            json={"name": "carol", "password": "newpass"},
            headers=ADMIN_HEADERS,
        )
        assert resp.status_code == 200
        resp = await client.get("/api/sites", headers=CAROL_HEADERS)
        assert resp.status_code == 401
        resp = await client.get(
            "/api/sites", headers={"X-Username": "carol", "X-Password": "newpass"}
        )
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_update_unknown_user(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/users/update", json={"name": "ghost", "is_admin": True}, headers=ADMIN_HEADERS
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_user_drops_site_access(self, client: AsyncClient) -> None:
        await _create(client, "carol", "carolpass")
        await client.post("/api/sites/create", json={"name": "blog"}, headers=ADMIN_HEADERS)
        await client.post(
            "/api/sites/authorize",
            json={"site_name": "blog", "username": "carol"},
            headers=ADMIN_HEADERS,
        )
        resp = await client.post("/api/users/delete", json={"name": "carol"}, headers=ADMIN_HEADERS)
        assert resp.status_code == 200

        resp = await client.get("/api/sites", headers=ADMIN_HEADERS)
        assert resp.json()["sites"][0]["users"] == []

    @pytest.mark.asyncio
    async def test_cannot_delete_self(self, client: AsyncClient) -> None:
        resp = await client.post("/api/users/delete", json={"name": "admin"}, headers=ADMIN_HEADERS)
        assert resp.status_code == 422
