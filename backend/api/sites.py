"""Site management, version history and export endpoints."""

from __future__ import annotations

import asyncio
import logging
from typing import IO, TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import (
    get_deployer,
    get_registry,
    get_session,
    get_settings,
    get_site_locks,
    get_version_store,
    require_auth,
)
from backend.config import Settings
from backend.models.user import User
from backend.schemas.site import (
    AuthorizeResponse,
    MessageResponse,
    RollbackRequest,
    RollbackResponse,
    SiteAuthorize,
    SiteCreate,
    SiteListResponse,
    SiteRef,
    SiteResponse,
    SiteUnauthorize,
    SiteUpdate,
    VersionResponse,
)
from backend.services.deploy_service import SiteDeployer
from backend.services.lock_service import SiteLocks
from backend.services.site_service import (
    SiteInfo,
    SiteRegistry,
    authorize_users,
    create_site,
    delete_site,
    sanitize_site_name,
    site_domain,
    site_url,
    touch_site,
    unauthorize_user,
    update_site,
)
from backend.services.version_service import DEFAULT_LIST_LIMIT, VersionStore

if TYPE_CHECKING:
    from collections.abc import Iterator

    from backend.services.version_service import VersionRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sites", tags=["sites"])

_EXPORT_CHUNK_SIZE = 64 * 1024


def site_response(settings: Settings, info: SiteInfo, scheme: str = "http") -> SiteResponse:
    return SiteResponse(
        name=info.name,
        desc=info.description,
        domain=site_domain(settings, info.name),
        url=site_url(settings, info.name, scheme),
        owner=info.owner,
        users=list(info.members),
        created_at=info.created_at,
        updated_at=info.updated_at,
    )


def version_response(record: VersionRecord) -> VersionResponse:
    return VersionResponse(
        hash=record.id,
        short_hash=record.short_id,
        message=record.message,
        author=record.author,
        date=record.date,
    )


@router.get("", response_model=SiteListResponse)
@router.get("/list", response_model=SiteListResponse)
async def list_sites(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    user: Annotated[User, Depends(require_auth)],
) -> SiteListResponse:
    """List sites the caller may deploy to."""
    scheme = request.url.scheme
    return SiteListResponse(
        sites=[site_response(settings, info, scheme) for info in registry.visible_to(user)]
    )


@router.post("/create", response_model=SiteResponse)
async def create_site_endpoint(
    body: SiteCreate,
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    locks: Annotated[SiteLocks, Depends(get_site_locks)],
    deployer: Annotated[SiteDeployer, Depends(get_deployer)],
    user: Annotated[User, Depends(require_auth)],
) -> SiteResponse:
    """Register a site owned by the caller and create its directory."""
    name = sanitize_site_name(body.name)
    async with locks.write(name):
        info = await create_site(
            session,
            registry,
            settings.web_root,
            name,
            body.desc,
            user.username,
            deployer.version_store,
        )
    return site_response(settings, info)


@router.post("/update", response_model=SiteResponse)
async def update_site_endpoint(
    body: SiteUpdate,
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    user: Annotated[User, Depends(require_auth)],
) -> SiteResponse:
    """Change a site's description."""
    registry.require_manage(body.name, user)
    info = await update_site(session, registry, body.name, body.desc)
    return site_response(settings, info)


@router.post("/delete", response_model=MessageResponse)
async def delete_site_endpoint(
    body: SiteRef,
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    locks: Annotated[SiteLocks, Depends(get_site_locks)],
    user: Annotated[User, Depends(require_auth)],
) -> MessageResponse:
    """Delete a site, its content and its history."""
    registry.require_manage(body.name, user)
    async with locks.write(body.name):
        removed_dir = await delete_site(session, registry, settings.web_root, body.name)
    if not removed_dir:
        return MessageResponse(message=f"Site {body.name} removed (directory was already gone)")
    return MessageResponse(message=f"Site {body.name} deleted")


@router.post("/authorize", response_model=AuthorizeResponse)
async def authorize_site(
    body: SiteAuthorize,
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    user: Annotated[User, Depends(require_auth)],
) -> AuthorizeResponse:
    """Grant other users deploy access to a site."""
    registry.require_manage(body.site_name, user)
    usernames = [*body.usernames, body.username] if body.username else list(body.usernames)
    if not usernames:
        raise ValueError("No usernames given")
    info, skipped = await authorize_users(session, registry, body.site_name, usernames)
    return AuthorizeResponse(
        message="Authorization updated",
        site=site_response(settings, info),
        skipped=skipped,
    )


@router.post("/unauthorize", response_model=AuthorizeResponse)
async def unauthorize_site(
    body: SiteUnauthorize,
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    user: Annotated[User, Depends(require_auth)],
) -> AuthorizeResponse:
    """Revoke a user's deploy access to a site."""
    registry.require_manage(body.site_name, user)
    info = await unauthorize_user(session, registry, body.site_name, body.username)
    return AuthorizeResponse(message="Authorization removed", site=site_response(settings, info))


@router.get("/versions", response_model=list[VersionResponse])
async def list_versions(
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    locks: Annotated[SiteLocks, Depends(get_site_locks)],
    deployer: Annotated[SiteDeployer, Depends(get_deployer)],
    store: Annotated[VersionStore, Depends(get_version_store)],
    user: Annotated[User, Depends(require_auth)],
    name: Annotated[str, Query(min_length=1)],
    limit: Annotated[int, Query(ge=1, le=1000)] = DEFAULT_LIST_LIMIT,
) -> list[VersionResponse]:
    """Deployment history of a site, newest first."""
    registry.require_access(name, user)
    async with locks.read(name):
        deployer.site_dir(name)
        records = await asyncio.to_thread(store.list, name, limit)
    return [version_response(r) for r in records]


@router.post("/rollback", response_model=RollbackResponse)
async def rollback_site(
    body: RollbackRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    locks: Annotated[SiteLocks, Depends(get_site_locks)],
    deployer: Annotated[SiteDeployer, Depends(get_deployer)],
    store: Annotated[VersionStore, Depends(get_version_store)],
    user: Annotated[User, Depends(require_auth)],
) -> RollbackResponse:
    """Restore a site to an earlier version as a new version."""
    registry.require_access(body.name, user)
    message = body.message or f"Rollback to {body.hash[:8]}"
    async with locks.write(body.name):
        deployer.site_dir(body.name)
        record = await asyncio.to_thread(
            store.restore, body.name, body.hash, message, user.username
        )
    await touch_site(session, registry, body.name)
    return RollbackResponse(
        message=f"Restored {body.name} to {body.hash[:8]}",
        version=version_response(record),
    )


def _iter_and_close(spool: IO[bytes]) -> Iterator[bytes]:
    try:
        while chunk := spool.read(_EXPORT_CHUNK_SIZE):
            yield chunk
    finally:
        spool.close()


@router.get("/export")
async def export_site(
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    locks: Annotated[SiteLocks, Depends(get_site_locks)],
    deployer: Annotated[SiteDeployer, Depends(get_deployer)],
    user: Annotated[User, Depends(require_auth)],
    name: Annotated[str, Query(min_length=1)],
) -> StreamingResponse:
    """Download the live tree of a site as a gzip tar (history excluded)."""
    registry.require_access(name, user)
    async with locks.read(name):
        spool, stats = await asyncio.to_thread(deployer.export, name)
    logger.info("Exported site %s: %d files, %d bytes", name, stats.files, stats.bytes)
    return StreamingResponse(
        _iter_and_close(spool),
        media_type="application/gzip",
        headers={"Content-Disposition": f'attachment; filename="{name}.tar.gz"'},
    )
