"""Client-side snapshot store: one JSON tracking record per site.

Records live outside the deployed tree (``~/.sitedeploy/tracking`` by
default) and hold the Snapshot taken at the last successful deploy::

    {"site_name": "blog", "last_sync": "...",
     "files": [{"path": "a.txt", "hash": "...", "size": 2, "mod_time": "..."}]}
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import TYPE_CHECKING, Any

from backend.services.datetime_service import format_iso, parse_datetime
from backend.services.snapshot_service import FileRecord, Snapshot

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


def _record_to_json(record: FileRecord) -> dict[str, Any]:
    return {
        "path": record.path,
        "hash": record.hash,
        "size": record.size,
        "mod_time": format_iso(record.mod_time),
    }


def _record_from_json(data: dict[str, Any]) -> FileRecord:
    return FileRecord(
        path=str(data["path"]),
        hash=str(data["hash"]),
        size=int(data["size"]),
        mod_time=parse_datetime(str(data["mod_time"])),
    )


class SnapshotStore:
    """Loads and saves per-site Snapshots under ``tracking_dir``."""

    def __init__(self, tracking_dir: Path) -> None:
        self.tracking_dir = tracking_dir

    def path_for(self, site: str) -> Path:
        if not site or "/" in site or "\\" in site or site.startswith("."):
            raise ValueError(f"Invalid site name for tracking: {site!r}")
        return self.tracking_dir / f"{site}.json"

    def load(self, site: str) -> Snapshot | None:
        """Return the last saved Snapshot, or None if there is none.

        A record that cannot be decoded is treated as missing so the next
        deploy is a full one; I/O errors propagate.
        """
        path = self.path_for(site)
        if not path.exists():
            return None
        raw = path.read_bytes()
        try:
            data = json.loads(raw.decode("utf-8"))
            records = [_record_from_json(item) for item in data["files"]]
            return Snapshot.from_records(records, taken_at=parse_datetime(data["last_sync"]))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable tracking record %s: %s", path, exc)
            return None

    def save(self, site: str, snapshot: Snapshot) -> None:
        """Atomically replace the site's record with ``snapshot``."""
        path = self.path_for(site)
        self.tracking_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "site_name": site,
            "last_sync": format_iso(snapshot.taken_at),
            "files": [_record_to_json(snapshot.files[p]) for p in sorted(snapshot.files)],
        }
        fd, tmp_name = tempfile.mkstemp(dir=self.tracking_dir, prefix=f".{site}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug("Saved tracking record for %s (%d files)", site, len(snapshot))

    def delete(self, site: str) -> bool:
        """Forget a site's tracking state. Returns True if a record existed."""
        path = self.path_for(site)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
