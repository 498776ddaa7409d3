"""Site registry: persisted site records, an in-memory index, and access rules.

The database is the authoritative store.  ``SiteRegistry`` keeps a derived,
read-only index for fast lookups; it is rebuilt only by ``reload()``, which
every mutating function calls after committing.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select

from backend.exceptions import PermissionDeniedError, SiteExistsError, SiteNotFoundError
from backend.models.site import Site, SiteMember
from backend.models.user import User
from backend.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.config import Settings
    from backend.services.version_service import VersionStore

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9_-]")
_DEFAULT_PORTS = {80, 443}


def sanitize_site_name(raw: str) -> str:
    """Normalize a requested site name to ``[a-z0-9_-]``.

    Spaces become hyphens and every other disallowed character is dropped.
    Raises ``ValueError`` when nothing usable remains.
    """
    name = raw.strip().lower().replace(" ", "-")
    name = _UNSAFE_NAME_CHARS.sub("", name)
    if not name:
        raise ValueError(f"Invalid site name: {raw!r}")
    return name


@dataclass(frozen=True)
class SiteInfo:
    """Immutable view of one registered site."""

    name: str
    description: str
    owner: str
    members: tuple[str, ...]
    created_at: str
    updated_at: str

    def can_access(self, user: User) -> bool:
        """Owners, authorized members and admins may deploy to the site."""
        return user.is_admin or user.username == self.owner or user.username in self.members

    def can_manage(self, user: User) -> bool:
        """Only owners and admins may update, delete or (un)authorize."""
        return user.is_admin or user.username == self.owner


class SiteRegistry:
    """Read-through index of registered sites."""

    def __init__(self) -> None:
        self._sites: dict[str, SiteInfo] = {}

    async def reload(self, session: AsyncSession) -> None:
        """Rebuild the index from the database."""
        stmt = select(Site).order_by(Site.name).execution_options(populate_existing=True)
        result = await session.execute(stmt)
        sites: dict[str, SiteInfo] = {}
        for site in result.scalars().all():
            sites[site.name] = SiteInfo(
                name=site.name,
                description=site.description,
                owner=site.owner,
                members=tuple(sorted(m.user.username for m in site.members)),
                created_at=site.created_at,
                updated_at=site.updated_at,
            )
        self._sites = sites
        logger.debug("Site registry reloaded with %d sites", len(sites))

    def get(self, name: str) -> SiteInfo | None:
        return self._sites.get(name)

    def require(self, name: str) -> SiteInfo:
        """Return the site or raise ``SiteNotFoundError``."""
        info = self._sites.get(name)
        if info is None:
            raise SiteNotFoundError(name)
        return info

    def require_access(self, name: str, user: User) -> SiteInfo:
        info = self.require(name)
        if not info.can_access(user):
            raise PermissionDeniedError(f"User {user.username} may not access site {name}")
        return info

    def require_manage(self, name: str, user: User) -> SiteInfo:
        info = self.require(name)
        if not info.can_manage(user):
            raise PermissionDeniedError(f"Only the owner or an admin may modify site {name}")
        return info

    def visible_to(self, user: User) -> list[SiteInfo]:
        """Sites the user may access, sorted by name."""
        return [info for info in self._sites.values() if info.can_access(user)]

    def __contains__(self, name: object) -> bool:
        return name in self._sites

    def __len__(self) -> int:
        return len(self._sites)


def site_domain(settings: Settings, name: str) -> str:
    """Public domain string for a site under the configured routing mode."""
    if settings.mode == "subdomain":
        domain = f"{name}.{settings.base_domain}"
        if settings.port not in _DEFAULT_PORTS:
            domain = f"{domain}:{settings.port}"
        return domain
    host = settings.single_domain or settings.base_domain
    return f"{host}/{name}"


def site_url(settings: Settings, name: str, scheme: str = "http") -> str:
    return f"{scheme}://{site_domain(settings, name)}"


async def _get_site_row(session: AsyncSession, name: str) -> Site:
    result = await session.execute(select(Site).where(Site.name == name))
    site = result.scalar_one_or_none()
    if site is None:
        raise SiteNotFoundError(name)
    return site


def _create_site_dir(site_dir: Path, version_store: VersionStore | None) -> None:
    site_dir.mkdir(parents=True)
    if version_store is not None:
        try:
            version_store.init(site_dir.name)
        except Exception:
            shutil.rmtree(site_dir, ignore_errors=True)
            raise


async def create_site(
    session: AsyncSession,
    registry: SiteRegistry,
    web_root: Path,
    raw_name: str,
    description: str,
    owner: str,
    version_store: VersionStore | None = None,
) -> SiteInfo:
    """Register a site and create its directory (and history, when enabled)."""
    name = sanitize_site_name(raw_name)
    existing = await session.execute(select(Site.id).where(Site.name == name))
    if existing.scalar_one_or_none() is not None:
        raise SiteExistsError(name)
    site_dir = web_root / name
    if site_dir.exists():
        raise SiteExistsError(name)

    await asyncio.to_thread(_create_site_dir, site_dir, version_store)

    now = format_iso(now_utc())
    session.add(
        Site(name=name, description=description, owner=owner, created_at=now, updated_at=now)
    )
    try:
        await session.commit()
    except Exception:
        logger.error("Failed to persist site %s; removing its directory", name)
        await asyncio.to_thread(shutil.rmtree, site_dir, True)
        raise
    await registry.reload(session)
    logger.info("Created site %s for %s", name, owner)
    return registry.require(name)


async def update_site(
    session: AsyncSession, registry: SiteRegistry, name: str, description: str
) -> SiteInfo:
    site = await _get_site_row(session, name)
    site.description = description
    site.updated_at = format_iso(now_utc())
    await session.commit()
    await registry.reload(session)
    return registry.require(name)


async def touch_site(session: AsyncSession, registry: SiteRegistry, name: str) -> None:
    """Record that a site's content changed."""
    site = await _get_site_row(session, name)
    site.updated_at = format_iso(now_utc())
    await session.commit()
    await registry.reload(session)


async def delete_site(
    session: AsyncSession, registry: SiteRegistry, web_root: Path, name: str
) -> bool:
    """Remove a site's record and its directory, history included.

    Returns False when the directory was already gone; the record is removed
    either way.
    """
    site = await _get_site_row(session, name)
    site_dir = web_root / name
    removed_dir = site_dir.is_dir()
    if removed_dir:
        await asyncio.to_thread(shutil.rmtree, site_dir)
    else:
        logger.warning("Directory for site %s was already missing", name)
    await session.delete(site)
    await session.commit()
    await registry.reload(session)
    logger.info("Deleted site %s", name)
    return removed_dir


async def authorize_users(
    session: AsyncSession, registry: SiteRegistry, name: str, usernames: Iterable[str]
) -> tuple[SiteInfo, list[str]]:
    """Grant deploy access to existing users.

    Unknown users and the owner are skipped; returns the updated site and the
    skipped names.
    """
    site = await _get_site_row(session, name)
    current = {m.user.username for m in site.members}
    skipped: list[str] = []
    for username in dict.fromkeys(usernames):
        if username == site.owner or username in current:
            continue
        result = await session.execute(select(User).where(User.username == username))
        user = result.scalar_one_or_none()
        if user is None:
            skipped.append(username)
            continue
        site.members.append(SiteMember(user=user))
        current.add(username)
    site.updated_at = format_iso(now_utc())
    await session.commit()
    await registry.reload(session)
    if skipped:
        logger.info("Skipped unknown users while authorizing on %s: %s", name, skipped)
    return registry.require(name), skipped


async def unauthorize_user(
    session: AsyncSession, registry: SiteRegistry, name: str, username: str
) -> SiteInfo:
    site = await _get_site_row(session, name)
    site.members = [m for m in site.members if m.user.username != username]
    site.updated_at = format_iso(now_utc())
    await session.commit()
    await registry.reload(session)
    return registry.require(name)
