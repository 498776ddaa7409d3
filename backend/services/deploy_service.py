"""Server-side apply: write uploaded content into a site and record a version.

Every mode validates its input before touching the live tree.  If the tree
is modified and then the apply fails, the tree is reset to the last recorded
version (when versioning is enabled) and the error is re-raised.  A failed
commit after a successful apply does not undo the deploy; it is logged and
returned as a warning.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import IO, TYPE_CHECKING

from backend.exceptions import SiteNotFoundError, VersionControlError
from backend.services.archive_service import (
    clear_tree,
    export_archive,
    remove_paths,
    resolve_inside,
    unpack_archive,
    validate_archive,
)
from backend.services.snapshot_service import is_hidden

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from backend.services.archive_service import PackStats
    from backend.services.version_service import VersionRecord, VersionStore

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "index.html"


@dataclass
class ApplyResult:
    """Outcome of one server-side apply."""

    mode: str
    files_written: int = 0
    files_deleted: int = 0
    version: VersionRecord | None = None
    warnings: list[str] = field(default_factory=list)


def safe_upload_name(filename: str | None) -> str:
    """Reduce an uploaded file name to a bare, visible basename."""
    if not filename:
        return DEFAULT_FILENAME
    name = PurePosixPath(filename.replace("\\", "/")).name
    if not name:
        return DEFAULT_FILENAME
    if is_hidden(name):
        raise ValueError(f"Invalid file name: {filename!r}")
    return name


class SiteDeployer:
    """Applies deploys to site directories under ``web_root``."""

    def __init__(self, web_root: Path, version_store: VersionStore | None = None) -> None:
        self.web_root = web_root
        self.version_store = version_store

    def site_dir(self, site: str) -> Path:
        path = self.web_root / site
        if not path.is_dir():
            raise SiteNotFoundError(site)
        return path

    def _apply(
        self,
        site: str,
        result: ApplyResult,
        change: Callable[[], None],
        message: str,
        author: str | None,
    ) -> ApplyResult:
        try:
            change()
        except Exception:
            self._restore_after_failure(site)
            raise
        if self.version_store is not None:
            result.version = self.version_store.try_commit(
                site, message, author, warnings=result.warnings
            )
        logger.info(
            "Deployed %s to %s: %d written, %d deleted (version %s)",
            result.mode,
            site,
            result.files_written,
            result.files_deleted,
            result.version.short_id if result.version else "none",
        )
        return result

    def _restore_after_failure(self, site: str) -> None:
        if self.version_store is None:
            logger.error("Apply to %s failed; tree may be partially updated", site)
            return
        try:
            self.version_store.rollback_working_tree(site)
        except VersionControlError as exc:
            logger.error("Could not reset %s after failed apply: %s", site, exc)

    def deploy_single_file(
        self,
        site: str,
        filename: str | None,
        data: IO[bytes],
        message: str,
        author: str | None = None,
    ) -> ApplyResult:
        """Replace the whole site with one uploaded file."""
        site_dir = self.site_dir(site)
        name = safe_upload_name(filename)
        result = ApplyResult(mode="single")

        def change() -> None:
            result.files_deleted = clear_tree(site_dir)
            with open(site_dir / name, "wb") as out:
                shutil.copyfileobj(data, out)
            result.files_written = 1

        return self._apply(site, result, change, message, author)

    def deploy_full(
        self, site: str, archive: IO[bytes], message: str, author: str | None = None
    ) -> ApplyResult:
        """Make the site tree match the archive exactly."""
        site_dir = self.site_dir(site)
        validate_archive(archive, site_dir)
        result = ApplyResult(mode="full")

        def change() -> None:
            result.files_deleted = clear_tree(site_dir)
            result.files_written = unpack_archive(archive, site_dir).files

        return self._apply(site, result, change, message, author)

    def deploy_incremental(
        self,
        site: str,
        archive: IO[bytes],
        deleted: Sequence[str],
        message: str,
        author: str | None = None,
    ) -> ApplyResult:
        """Remove ``deleted`` then add or overwrite the archive's files."""
        site_dir = self.site_dir(site)
        validate_archive(archive, site_dir)
        for rel in deleted:
            resolve_inside(site_dir, rel)
        result = ApplyResult(mode="incremental")

        def change() -> None:
            result.files_deleted = len(remove_paths(site_dir, deleted))
            result.files_written = unpack_archive(archive, site_dir).files

        return self._apply(site, result, change, message, author)

    def export(self, site: str) -> tuple[IO[bytes], PackStats]:
        """Package the live tree, without history, for download."""
        return export_archive(self.site_dir(site))
