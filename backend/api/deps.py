"""Shared API dependencies: DB session, header auth, site services."""

from __future__ import annotations

import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import Settings
from backend.models.user import User
from backend.services.auth_service import api_key_principal, authenticate_user
from backend.services.deploy_service import SiteDeployer
from backend.services.lock_service import SiteLocks
from backend.services.site_service import SiteRegistry
from backend.services.version_service import VersionStore


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_registry(request: Request) -> SiteRegistry:
    registry: SiteRegistry = request.app.state.site_registry
    return registry


def get_site_locks(request: Request) -> SiteLocks:
    locks: SiteLocks = request.app.state.site_locks
    return locks


def get_deployer(request: Request) -> SiteDeployer:
    deployer: SiteDeployer = request.app.state.deployer
    return deployer


def get_version_store(request: Request) -> VersionStore:
    """Get the version store, or 400 when versioning is disabled."""
    store: VersionStore | None = request.app.state.version_store
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Versioning is not enabled on this server",
        )
    return store


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def get_current_user(
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_session)],
    x_username: Annotated[str | None, Header()] = None,
    x_password: Annotated[str | None, Header()] = None,
    x_api_key: Annotated[str | None, Header()] = None,
) -> User | None:
    """Resolve the caller from ``X-Username``/``X-Password`` or ``X-API-Key``."""
    if x_username and x_password:
        return await authenticate_user(session, x_username, x_password)
    if settings.api_key and x_api_key and secrets.compare_digest(x_api_key, settings.api_key):
        return api_key_principal(settings)
    return None


async def require_auth(
    user: Annotated[User | None, Depends(get_current_user)],
) -> User:
    """Require authentication. Raises 401 if not authenticated."""
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user


async def require_admin(
    user: Annotated[User, Depends(require_auth)],
) -> User:
    """Require admin role. Raises 403 if not admin."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
