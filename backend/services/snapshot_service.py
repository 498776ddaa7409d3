"""Content fingerprinting: walk a site tree and record per-file hashes."""

from __future__ import annotations

import hashlib
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING

from backend.services.datetime_service import from_timestamp, now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping
    from datetime import datetime

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class FileRecord:
    """One tracked file, keyed by its slash-separated path relative to the root."""

    path: str
    hash: str
    size: int
    mod_time: datetime


@dataclass(frozen=True)
class Snapshot:
    """Complete, immutable file-state fingerprint of a tree at one moment."""

    files: Mapping[str, FileRecord] = field(default_factory=dict)
    taken_at: datetime = field(default_factory=now_utc)

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))

    @classmethod
    def from_records(
        cls, records: Iterable[FileRecord], taken_at: datetime | None = None
    ) -> Snapshot:
        """Build a snapshot from records, rejecting duplicate paths."""
        files: dict[str, FileRecord] = {}
        for record in records:
            if record.path in files:
                raise ValueError(f"Duplicate path in snapshot: {record.path}")
            files[record.path] = record
        if taken_at is None:
            return cls(files=files)
        return cls(files=files, taken_at=taken_at)

    @property
    def paths(self) -> set[str]:
        return set(self.files)

    def __len__(self) -> int:
        return len(self.files)


def is_hidden(name: str) -> bool:
    """Names starting with a dot are never tracked, packaged or deployed."""
    return name.startswith(".")


def hash_file(file_path: Path) -> str:
    """Compute the change-detection digest (MD5 hex) of a file's raw bytes."""
    digest = hashlib.md5(usedforsecurity=False)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _raise_walk_error(exc: OSError) -> None:
    raise exc


def iter_tree(root: Path) -> Iterator[tuple[Path, bool]]:
    """Yield ``(path, is_dir)`` for every non-hidden entry under root, sorted.

    Hidden directories are pruned with their whole subtree.  Symbolic links
    and special files are skipped.  Unreadable directories raise ``OSError``.
    """
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        current = Path(dirpath)
        kept_dirs: list[str] = []
        for name in sorted(dirnames):
            if is_hidden(name) or (current / name).is_symlink():
                continue
            kept_dirs.append(name)
        dirnames[:] = kept_dirs
        for name in kept_dirs:
            yield current / name, True
        for name in sorted(filenames):
            if is_hidden(name):
                continue
            full = current / name
            mode = full.lstat().st_mode
            if not stat.S_ISREG(mode):
                logger.debug("Skipping non-regular file %s", full)
                continue
            yield full, False


def relative_posix(root: Path, path: Path) -> str:
    """Return path relative to root with forward slashes on every platform."""
    return path.relative_to(root).as_posix()


def fingerprint_directory(root: Path) -> Snapshot:
    """Scan a directory tree into a Snapshot.

    Any unreadable file or directory aborts the scan with ``OSError``; a
    partial snapshot is never returned.
    """
    if not root.exists():
        raise FileNotFoundError(f"Directory does not exist: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {root}")

    taken_at = now_utc()
    records: list[FileRecord] = []
    for full, is_dir in iter_tree(root):
        if is_dir:
            continue
        st = full.stat()
        records.append(
            FileRecord(
                path=relative_posix(root, full),
                hash=hash_file(full),
                size=st.st_size,
                mod_time=from_timestamp(st.st_mtime),
            )
        )
    logger.debug("Fingerprinted %d files under %s", len(records), root)
    return Snapshot.from_records(records, taken_at=taken_at)
