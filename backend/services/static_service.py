"""Static file resolution for deployed sites."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from backend.exceptions import PermissionDeniedError, SiteNotFoundError
from backend.services.archive_service import VCS_DIR

if TYPE_CHECKING:
    from backend.config import Settings

logger = logging.getLogger(__name__)

INDEX_FILE = "index.html"
CACHE_FOREVER = "public, max-age=31536000"
NO_CACHE = "no-cache"
CACHEABLE_EXTENSIONS = frozenset(
    {
        ".js",
        ".css",
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".svg",
        ".ico",
        ".woff",
        ".woff2",
        ".ttf",
        ".eot",
    }
)
_SITE_LABEL_RE = re.compile(r"^[a-z0-9_-]+$")


@dataclass(frozen=True)
class StaticFile:
    """A resolved file plus the caching policy to serve it with."""

    path: Path
    cache_control: str

    @property
    def etag(self) -> str:
        return f'"{int(self.path.stat().st_mtime):x}"'


def cache_control_for(path: Path) -> str:
    """Long-lived caching for static assets, revalidation for everything else."""
    return CACHE_FOREVER if path.suffix.lower() in CACHEABLE_EXTENSIONS else NO_CACHE


def site_from_host(host: str, base_domain: str) -> str | None:
    """Extract the site name from ``<site>.<base_domain>[:port]``."""
    hostname = host.rsplit(":", 1)[0].lower().rstrip(".")
    suffix = "." + base_domain.lower()
    if not hostname.endswith(suffix):
        return None
    label = hostname[: -len(suffix)].split(".", 1)[0]
    if not _SITE_LABEL_RE.match(label):
        return None
    return label


def split_site_path(request_path: str) -> tuple[str, str]:
    """Split ``/<site>/<rest>`` into the site name and the in-site path."""
    stripped = request_path.lstrip("/")
    site, _, rest = stripped.partition("/")
    return site, "/" + rest


def list_site_names(web_root: Path) -> list[str]:
    if not web_root.is_dir():
        return []
    return sorted(
        child.name
        for child in web_root.iterdir()
        if child.is_dir() and not child.name.startswith(".")
    )


def resolve_static_file(site_dir: Path, request_path: str) -> StaticFile | None:
    """Map a request path to a file inside ``site_dir``.

    ``/`` and directories map to their ``index.html``.  A missing file falls
    back to the site's root ``index.html`` so client-side routes resolve.
    Returns None when nothing can be served.  Raises ``PermissionDeniedError``
    for traversal, version-control paths and directories without an index.
    """
    rel = PurePosixPath(request_path.lstrip("/"))
    if VCS_DIR in rel.parts or ".." in rel.parts:
        raise PermissionDeniedError(f"Access denied: {request_path}")

    root = site_dir.resolve()
    target = (root / rel).resolve()
    if not target.is_relative_to(root):
        raise PermissionDeniedError(f"Access denied: {request_path}")

    if target.is_dir():
        index = target / INDEX_FILE
        if index.is_file():
            return StaticFile(index, cache_control_for(index))
        if target != root:
            raise PermissionDeniedError("Directory listing not allowed")
    elif target.is_file():
        return StaticFile(target, cache_control_for(target))

    fallback = root / INDEX_FILE
    if fallback.is_file():
        return StaticFile(fallback, cache_control_for(fallback))
    return None


def locate(settings: Settings, host: str, path: str) -> StaticFile | None:
    """Resolve a static request under the configured routing mode.

    Raises ``SiteNotFoundError`` when the host or path names no site.
    """
    if settings.mode == "subdomain":
        site = site_from_host(host, settings.base_domain)
        rest = path
    else:
        site, rest = split_site_path(path)
    if not site or not _SITE_LABEL_RE.match(site):
        raise SiteNotFoundError(site or host)

    site_dir = settings.web_root / site
    if not site_dir.is_dir():
        raise SiteNotFoundError(site)
    return resolve_static_file(site_dir, rest)
