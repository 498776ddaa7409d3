"""Deploy endpoints: single file, full archive and incremental archive."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import (
    get_deployer,
    get_registry,
    get_session,
    get_settings,
    get_site_locks,
    require_auth,
)
from backend.api.sites import version_response
from backend.config import Settings
from backend.models.user import User
from backend.schemas.site import DeployResponse
from backend.services.deploy_service import ApplyResult, SiteDeployer
from backend.services.lock_service import SiteLocks
from backend.services.site_service import SiteRegistry, touch_site

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sites", tags=["deploy"])


def _check_upload_size(upload: UploadFile, max_size: int) -> None:
    """Reject uploads over the configured limit, leaving the stream rewound."""
    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)
    if size > max_size:
        raise HTTPException(
            status_code=413,
            detail=f"Upload too large ({size} bytes, max {max_size})",
        )


def _parse_deleted_files(raw: str) -> list[str]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid deleted_files JSON: {exc}") from exc
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        raise HTTPException(status_code=400, detail="deleted_files must be a list of strings")
    return value


def _deploy_response(result: ApplyResult, summary: str) -> DeployResponse:
    return DeployResponse(
        message=summary,
        mode=result.mode,
        files_written=result.files_written,
        files_deleted=result.files_deleted,
        version=version_response(result.version) if result.version else None,
        warnings=result.warnings,
    )


@router.post("/deploy", response_model=DeployResponse)
async def deploy_file(
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    locks: Annotated[SiteLocks, Depends(get_site_locks)],
    deployer: Annotated[SiteDeployer, Depends(get_deployer)],
    user: Annotated[User, Depends(require_auth)],
    name: Annotated[str, Form(min_length=1)],
    file: Annotated[UploadFile, File()],
    message: Annotated[str, Form()] = "",
) -> DeployResponse:
    """Replace a site's content with a single uploaded file."""
    registry.require_access(name, user)
    _check_upload_size(file, settings.max_upload_size)
    async with locks.write(name):
        result = await asyncio.to_thread(
            deployer.deploy_single_file,
            name,
            file.filename,
            file.file,
            message or "Deploy single file",
            user.username,
        )
    await touch_site(session, registry, name)
    return _deploy_response(result, "Deploy succeeded")


@router.post("/deploy-full", response_model=DeployResponse)
async def deploy_full(
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    locks: Annotated[SiteLocks, Depends(get_site_locks)],
    deployer: Annotated[SiteDeployer, Depends(get_deployer)],
    user: Annotated[User, Depends(require_auth)],
    name: Annotated[str, Form(min_length=1)],
    package: Annotated[UploadFile, File()],
    message: Annotated[str, Form()] = "",
) -> DeployResponse:
    """Replace a site's whole tree with the uploaded archive."""
    registry.require_access(name, user)
    _check_upload_size(package, settings.max_upload_size)
    async with locks.write(name):
        result = await asyncio.to_thread(
            deployer.deploy_full, name, package.file, message or "Full deploy", user.username
        )
    await touch_site(session, registry, name)
    return _deploy_response(result, "Full deploy succeeded")


@router.post("/deploy-incremental", response_model=DeployResponse)
async def deploy_incremental(
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[SiteRegistry, Depends(get_registry)],
    locks: Annotated[SiteLocks, Depends(get_site_locks)],
    deployer: Annotated[SiteDeployer, Depends(get_deployer)],
    user: Annotated[User, Depends(require_auth)],
    name: Annotated[str, Form(min_length=1)],
    package: Annotated[UploadFile, File()],
    message: Annotated[str, Form()] = "",
    deleted_files: Annotated[str, Form()] = "[]",
) -> DeployResponse:
    """Apply changed files and remove deleted ones.

    ``deleted_files`` is a JSON list of site-relative paths.
    """
    registry.require_access(name, user)
    deleted = _parse_deleted_files(deleted_files)
    _check_upload_size(package, settings.max_upload_size)
    async with locks.write(name):
        result = await asyncio.to_thread(
            deployer.deploy_incremental,
            name,
            package.file,
            deleted,
            message or "Incremental deploy",
            user.username,
        )
    await touch_site(session, registry, name)
    return _deploy_response(result, "Incremental deploy succeeded")
