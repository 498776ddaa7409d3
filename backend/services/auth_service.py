"""Authentication service: password hashing and user management."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import bcrypt
from sqlalchemy import select

from backend.exceptions import UserExistsError, UserNotFoundError
from backend.models.user import User
from backend.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.config import Settings

logger = logging.getLogger(__name__)

_DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"sitedeploy-dummy-password", bcrypt.gensalt()).decode(
    "utf-8"
)


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


async def get_user(session: AsyncSession, username: str) -> User | None:
    stmt = select(User).where(User.username == username)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def authenticate_user(session: AsyncSession, username: str, password: str) -> User | None:
    """Authenticate a user by username and password."""
    user = await get_user(session, username)
    if user is None:
        # Run a dummy hash check to reduce username timing side channels.
        verify_password(password, _DUMMY_PASSWORD_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def api_key_principal(settings: Settings) -> User:
    """Build the transient admin identity granted to a valid ``X-API-Key``."""
    return User(
        username=settings.admin_username,
        password_hash="",
        is_admin=True,
        created_at="",
        updated_at="",
    )


async def list_users(session: AsyncSession) -> list[User]:
    stmt = select(User).order_by(User.username)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_user(
    session: AsyncSession, username: str, password: str, *, is_admin: bool = False
) -> User:
    """Create a user. Raises ``UserExistsError`` on a duplicate name."""
    if await get_user(session, username) is not None:
        raise UserExistsError(username)
    now = format_iso(now_utc())
    user = User(
        username=username,
        password_hash=hash_password(password),
        is_admin=is_admin,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    logger.info("Created user %s (admin=%s)", username, is_admin)
    return user


async def update_user(
    session: AsyncSession,
    username: str,
    *,
    password: str | None = None,
    is_admin: bool | None = None,
) -> User:
    """Change a user's password and/or admin flag. Omitted fields are kept."""
    user = await get_user(session, username)
    if user is None:
        raise UserNotFoundError(username)
    if password:
        user.password_hash = hash_password(password)
    if is_admin is not None:
        user.is_admin = is_admin
    user.updated_at = format_iso(now_utc())
    await session.commit()
    return user


async def delete_user(session: AsyncSession, username: str) -> None:
    user = await get_user(session, username)
    if user is None:
        raise UserNotFoundError(username)
    await session.delete(user)
    await session.commit()
    logger.info("Deleted user %s", username)


async def ensure_admin_user(session: AsyncSession, settings: Settings) -> None:
    """Create the admin user if it doesn't exist."""
    existing = await get_user(session, settings.admin_username)
    if existing is None:
        now = format_iso(now_utc())
        admin = User(
            username=settings.admin_username,
            password_hash=hash_password(settings.admin_password),
            is_admin=True,
            created_at=now,
            updated_at=now,
        )
        session.add(admin)
        await session.commit()
        logger.info("Created admin user %s", settings.admin_username)
