"""Deployment orchestrator: fingerprint, diff, package, upload, then record.

The local Snapshot is saved only after the server confirms the apply, so a
failed upload leaves tracking state matching the last known-good deploy.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING, Literal, Protocol

from backend.services.archive_service import pack_archive
from backend.services.diff_service import diff_snapshots
from backend.services.snapshot_service import fingerprint_directory

if TYPE_CHECKING:
    from pathlib import Path

    from cli.tracking import SnapshotStore

logger = logging.getLogger(__name__)

DeployMode = Literal["auto", "full", "incremental"]


@dataclass
class UploadReceipt:
    """What the server reported after applying an upload."""

    version: str | None = None
    warnings: list[str] = field(default_factory=list)


class Transport(Protocol):
    """Carries a packaged deploy to the server."""

    def upload_full(self, site: str, message: str, archive: IO[bytes]) -> UploadReceipt: ...

    def upload_incremental(
        self, site: str, message: str, archive: IO[bytes], deleted: list[str]
    ) -> UploadReceipt: ...


@dataclass
class DeploySummary:
    """Outcome of one ``Deployer.deploy`` call."""

    site: str
    mode: Literal["full", "incremental", "noop"]
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    archive_bytes: int = 0
    version: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return len(self.added) + len(self.modified) + len(self.deleted)


class Deployer:
    """Decides between full, incremental and no-op deploys for a local tree."""

    def __init__(self, store: SnapshotStore, transport: Transport) -> None:
        self.store = store
        self.transport = transport

    def deploy(
        self, site: str, root: Path, message: str, mode: DeployMode = "auto"
    ) -> DeploySummary:
        current = fingerprint_directory(root)
        previous = None if mode == "full" else self.store.load(site)
        if previous is None and mode == "incremental":
            logger.info("No tracking record for %s; falling back to a full deploy", site)

        delta = diff_snapshots(current, previous)
        if previous is not None and delta.is_empty:
            logger.info("No changes to deploy for %s", site)
            return DeploySummary(site=site, mode="noop")

        with tempfile.TemporaryFile() as archive:
            if previous is None:
                stats = pack_archive(root, archive)
                vanished = current.paths - set(stats.paths)
                if vanished:
                    raise FileNotFoundError(
                        f"Files changed during packaging: {', '.join(sorted(vanished))}"
                    )
            else:
                pack_archive(root, archive, delta.to_upload)
            archive_bytes = archive.tell()
            archive.seek(0)
            if previous is None:
                receipt = self.transport.upload_full(site, message, archive)
            else:
                receipt = self.transport.upload_incremental(site, message, archive, delta.deleted)

        self.store.save(site, current)
        summary = DeploySummary(
            site=site,
            mode="full" if previous is None else "incremental",
            added=delta.added,
            modified=delta.modified,
            deleted=delta.deleted,
            archive_bytes=archive_bytes,
            version=receipt.version,
            warnings=receipt.warnings,
        )
        logger.info(
            "Deployed %s (%s): +%d ~%d -%d, %d bytes",
            site,
            summary.mode,
            len(summary.added),
            len(summary.modified),
            len(summary.deleted),
            archive_bytes,
        )
        return summary
