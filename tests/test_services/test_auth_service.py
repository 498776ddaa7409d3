"""Unit tests for the authentication service."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from backend.exceptions import UserExistsError, UserNotFoundError
from backend.services.auth_service import (
    api_key_principal,
    authenticate_user,
    create_user,
    delete_user,
    ensure_admin_user,
    get_user,
    hash_password,
    list_users,
    update_user,
    verify_password,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.config import Settings


class TestPasswordHashing:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("correcthorse")
        assert hashed != "correcthorse"
        assert verify_password("correcthorse", hashed)
        assert not verify_password("wrong", hashed)

    def test_hashes_are_salted(self) -> None:
        assert hash_password("same") != hash_password("same")


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_valid_credentials(self, db_session: AsyncSession) -> None:
        await create_user(db_session, "alice", "correcthorse")
        user = await authenticate_user(db_session, "alice", "correcthorse")
        assert user is not None
        assert user.username == "alice"
        assert user.is_admin is False

    @pytest.mark.asyncio
    async def test_wrong_password(self, db_session: AsyncSession) -> None:
        await create_user(db_session, "alice", "correcthorse")
        assert await authenticate_user(db_session, "alice", "nope") is None

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session: AsyncSession) -> None:
        assert await authenticate_user(db_session, "ghost", "whatever") is None


class TestUserManagement:
    @pytest.mark.asyncio
    async def test_duplicate_user_rejected(self, db_session: AsyncSession) -> None:
        await create_user(db_session, "alice", "pw")
        with pytest.raises(UserExistsError):
            await create_user(db_session, "alice", "other")

    @pytest.mark.asyncio
    async def test_update_password_and_role(self, db_session: AsyncSession) -> None:
        await create_user(db_session, "alice", "old")
        await update_user(db_session, "alice", password="new", is_admin=True)
        user = await authenticate_user(db_session, "alice", "new")
        assert user is not None
        assert user.is_admin is True

    @pytest.mark.asyncio
    async def test_update_keeps_omitted_fields(self, db_session: AsyncSession) -> None:
        await create_user(db_session, "alice", "pw", is_admin=True)
        await update_user(db_session, "alice")
        user = await authenticate_user(db_session, "alice", "pw")
        assert user is not None
        assert user.is_admin is True

    @pytest.mark.asyncio
    async def test_update_unknown_user(self, db_session: AsyncSession) -> None:
        with pytest.raises(UserNotFoundError):
            await update_user(db_session, "ghost", password="x")

    @pytest.mark.asyncio
    async def test_delete_user(self, db_session: AsyncSession) -> None:
        await create_user(db_session, "alice", "pw")
        await delete_user(db_session, "alice")
        assert await get_user(db_session, "alice") is None
        with pytest.raises(UserNotFoundError):
            await delete_user(db_session, "alice")

    @pytest.mark.asyncio
    async def test_list_users_sorted(self, db_session: AsyncSession) -> None:
        await create_user(db_session, "zed", "pw")
        await create_user(db_session, "amy", "pw")
        assert [u.username for u in await list_users(db_session)] == ["amy", "zed"]


class TestAdminBootstrap:
    @pytest.mark.asyncio
    async def test_ensure_admin_is_idempotent(
        self, db_session: AsyncSession, test_settings: Settings
    ) -> None:
        await ensure_admin_user(db_session, test_settings)
        await ensure_admin_user(db_session, test_settings)
        users = await list_users(db_session)
        assert [u.username for u in users] == ["admin"]
        assert users[0].is_admin

    @pytest.mark.asyncio
    async def test_existing_admin_password_not_reset(
        self, db_session: AsyncSession, test_settings: Settings
    ) -> None:
        await ensure_admin_user(db_session, test_settings)
        await update_user(db_session, "admin", password="rotated")
        await ensure_admin_user(db_session, test_settings)
        assert await authenticate_user(db_session, "admin", "rotated") is not None

    def test_api_key_principal_is_admin(self, test_settings: Settings) -> None:
        principal = api_key_principal(test_settings)
        assert principal.username == "admin"
        assert principal.is_admin is True
