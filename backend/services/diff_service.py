"""Diff engine: compare two snapshots into added, modified and deleted sets."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backend.services.snapshot_service import Snapshot


@dataclass
class DeltaSet:
    """The Added/Modified/Deleted partition between two snapshots."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to deploy."""
        return not (self.added or self.modified or self.deleted)

    @property
    def to_upload(self) -> list[str]:
        """Paths that must be packaged: added and modified files."""
        return sorted(self.added + self.modified)


def diff_snapshots(current: Snapshot, previous: Snapshot | None) -> DeltaSet:
    """Compute the delta that turns ``previous`` into ``current``.

    Content hash is the only criterion for "unchanged": a file whose size or
    mtime changed but whose hash did not is not reported.  ``previous=None``
    means there is no baseline, so every current path is added.
    """
    delta = DeltaSet()
    previous_files = previous.files if previous is not None else {}

    for path in sorted(current.files):
        prev = previous_files.get(path)
        if prev is None:
            delta.added.append(path)
        elif prev.hash != current.files[path].hash:
            delta.modified.append(path)
        else:
            delta.unchanged.append(path)

    for path in sorted(previous_files):
        if path not in current.files:
            delta.deleted.append(path)

    return delta
