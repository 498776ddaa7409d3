"""User administration endpoints (admin only)."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_registry, get_session, require_admin
from backend.models.user import User
from backend.schemas.user import (
    UserCreate,
    UserListResponse,
    UserMessageResponse,
    UserRef,
    UserResponse,
    UserUpdate,
)
from backend.services.auth_service import create_user, delete_user, list_users, update_user
from backend.services.site_service import SiteRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/list", response_model=UserListResponse)
async def list_users_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    _admin: Annotated[User, Depends(require_admin)],
) -> UserListResponse:
    users = await list_users(session)
    return UserListResponse(
        users=[UserResponse(name=u.username, is_admin=u.is_admin) for u in users]
    )


@router.post("/create", response_model=UserMessageResponse)
async def create_user_endpoint(
    body: UserCreate,
    session: Annotated[AsyncSession, Depends(get_session)],
    _admin: Annotated[User, Depends(require_admin)],
) -> UserMessageResponse:
    await create_user(session, body.name, body.password, is_admin=body.is_admin)
    return UserMessageResponse(message="User created", name=body.name)


@router.post("/update", response_model=UserMessageResponse)
async def update_user_endpoint(
    body: UserUpdate,
    session: Annotated[AsyncSession, Depends(get_session)],
    _admin: Annotated[User, Depends(require_admin)],
) -> UserMessageResponse:
    await update_user(session, body.name, password=body.password, is_admin=body.is_admin)
    return UserMessageResponse(message="User updated", name=body.name)


@router.post("/delete", response_model=UserMessageResponse)
async def delete_user_endpoint(
    body: UserRef,
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    admin: Annotated[User, Depends(require_admin)],
) -> UserMessageResponse:
    """Delete a user. Their site authorizations go with them."""
    if body.name == admin.username:
        raise ValueError("Admins cannot delete their own account")
    await delete_user(session, body.name)
    await registry.reload(session)
    return UserMessageResponse(message="User deleted", name=body.name)
