"""Deploy archives: gzip-compressed tar packaging and safe extraction.

Entry names are POSIX-style paths relative to the site root.  Extraction
validates every member before anything is written: a single entry that would
land outside the destination (or inside its ``.git`` directory) fails the
whole apply.  Symbolic links, hard links and device entries are ignored.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import tarfile
import tempfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import IO, TYPE_CHECKING

from backend.exceptions import CorruptArchiveError, UnsafeArchivePathError
from backend.services.snapshot_service import iter_tree, relative_posix

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

VCS_DIR = ".git"
_EXPORT_SPOOL_SIZE = 8 * 1024 * 1024
_CORRUPT_ERRORS = (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError)


@dataclass
class PackStats:
    """Counts and file paths of a packaged archive."""

    files: int = 0
    directories: int = 0
    bytes: int = 0
    paths: list[str] = field(default_factory=list)


@dataclass
class UnpackStats:
    """Counts for an applied archive."""

    files: int = 0
    directories: int = 0
    skipped: int = 0


@dataclass
class ArchiveEntry:
    """A decoded archive entry: a directory marker or a file with its payload."""

    path: str
    is_dir: bool
    data: bytes | None = None


def resolve_inside(dest: Path, rel_path: str) -> Path:
    """Resolve ``rel_path`` under ``dest``, rejecting anything that escapes it.

    Absolute names, ``..`` escapes (after normalization and symlink
    resolution) and names touching the version-control directory raise
    ``UnsafeArchivePathError``.
    """
    pure = PurePosixPath(rel_path)
    if not rel_path or pure.is_absolute() or rel_path.startswith("\\"):
        raise UnsafeArchivePathError(rel_path)
    if VCS_DIR in pure.parts:
        raise UnsafeArchivePathError(rel_path)

    root = dest.resolve()
    target = (root / pure).resolve()
    if target == root or not target.is_relative_to(root):
        raise UnsafeArchivePathError(rel_path)
    return target


def _check_relative(rel_path: str) -> str:
    """Validate a caller-supplied relative file path for packaging."""
    pure = PurePosixPath(rel_path)
    if pure.is_absolute() or ".." in pure.parts or not pure.parts:
        raise ValueError(f"Invalid relative path: {rel_path!r}")
    return pure.as_posix()


def _add_directory(tar: tarfile.TarFile, full: Path, arcname: str, stats: PackStats) -> None:
    tar.add(str(full), arcname=arcname, recursive=False)
    stats.directories += 1


def _add_file(tar: tarfile.TarFile, full: Path, arcname: str, stats: PackStats) -> None:
    info = tar.gettarinfo(str(full), arcname=arcname)
    if not info.isreg():
        raise FileNotFoundError(f"Not a regular file: {full}")
    with open(full, "rb") as f:
        tar.addfile(info, f)
    stats.files += 1
    stats.paths.append(arcname)
    stats.bytes += info.size


def pack_archive(root: Path, fileobj: IO[bytes], paths: Iterable[str] | None = None) -> PackStats:
    """Write a gzip tar of ``root`` into ``fileobj``.

    With ``paths=None`` every non-hidden file and directory is included, so
    empty directories survive the round trip.  Otherwise exactly the listed
    files are packaged, preceded by directory entries for their parents.
    A listed file that no longer exists raises ``FileNotFoundError``.
    """
    stats = PackStats()
    with tarfile.open(fileobj=fileobj, mode="w:gz") as tar:
        if paths is None:
            for full, is_dir in iter_tree(root):
                arcname = relative_posix(root, full)
                if is_dir:
                    _add_directory(tar, full, arcname, stats)
                else:
                    _add_file(tar, full, arcname, stats)
        else:
            seen_dirs: set[str] = set()
            for rel in sorted({_check_relative(p) for p in paths}):
                for parent in reversed(PurePosixPath(rel).parents[:-1]):
                    parent_name = parent.as_posix()
                    if parent_name not in seen_dirs:
                        seen_dirs.add(parent_name)
                        _add_directory(tar, root / parent_name, parent_name, stats)
                full = root / rel
                if not full.is_file():
                    raise FileNotFoundError(f"File changed during packaging: {rel}")
                _add_file(tar, full, rel, stats)
    logger.debug(
        "Packed %d files, %d directories (%d bytes) from %s",
        stats.files,
        stats.directories,
        stats.bytes,
        root,
    )
    return stats


def _open_for_read(fileobj: IO[bytes]) -> tarfile.TarFile:
    try:
        return tarfile.open(fileobj=fileobj, mode="r:gz")
    except _CORRUPT_ERRORS as exc:
        raise CorruptArchiveError(f"Invalid deploy archive: {exc}") from exc


def _plan_members(
    tar: tarfile.TarFile, dest: Path
) -> tuple[list[tuple[tarfile.TarInfo, Path]], int]:
    """Validate every member and map it to its target path.

    Returns the writable members and the number of ignored (link/special)
    entries.  Raises before anything is written.
    """
    try:
        members = tar.getmembers()
    except _CORRUPT_ERRORS as exc:
        raise CorruptArchiveError(f"Invalid deploy archive: {exc}") from exc

    planned: list[tuple[tarfile.TarInfo, Path]] = []
    skipped = 0
    for member in members:
        name = member.name.rstrip("/")
        if name in ("", "."):
            continue
        if name.startswith("./"):
            name = name[2:]
        if not (member.isfile() or member.isdir()):
            logger.info("Ignoring non-regular archive entry %s", member.name)
            skipped += 1
            continue
        try:
            target = resolve_inside(dest, name)
        except UnsafeArchivePathError:
            logger.warning("Rejected archive entry escaping %s: %s", dest, member.name)
            raise
        planned.append((member, target))
    _check_type_conflicts(planned)
    return planned, skipped


def _check_type_conflicts(planned: list[tuple[tarfile.TarInfo, Path]]) -> None:
    """Reject archives that use one path both as a file and as a parent directory."""
    files = {target for member, target in planned if member.isfile()}
    for _member, target in planned:
        for parent in target.parents:
            if parent in files:
                raise CorruptArchiveError(
                    f"Archive entry {parent.name!r} is both a file and a directory"
                )


def validate_archive(fileobj: IO[bytes], dest: Path) -> int:
    """Check that an archive can be applied to ``dest`` without writing anything.

    Returns the number of entries that would be materialized.  ``fileobj`` is
    rewound so it can be passed to ``unpack_archive`` afterwards.
    """
    with _open_for_read(fileobj) as tar:
        planned, _skipped = _plan_members(tar, dest)
    fileobj.seek(0)
    return len(planned)


def unpack_archive(fileobj: IO[bytes], dest: Path) -> UnpackStats:
    """Materialize an archive under ``dest``, creating parents as needed.

    ``fileobj`` must be seekable.  All entries are validated first, so a path
    escape leaves ``dest`` untouched.  A stream that turns out to be truncated
    mid-extraction raises ``CorruptArchiveError`` with earlier entries already
    written; callers with version control reset the tree in that case.
    """
    stats = UnpackStats()
    dest.mkdir(parents=True, exist_ok=True)
    with _open_for_read(fileobj) as tar:
        planned, stats.skipped = _plan_members(tar, dest)
        try:
            for member, target in planned:
                if member.isdir():
                    if target.exists() and not target.is_dir():
                        target.unlink()
                    target.mkdir(parents=True, exist_ok=True)
                    stats.directories += 1
                    continue
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                try:
                    target.parent.mkdir(parents=True, exist_ok=True)
                except (FileExistsError, NotADirectoryError) as exc:
                    raise CorruptArchiveError(
                        f"Archive entry {member.name} conflicts with an existing file"
                    ) from exc
                source = tar.extractfile(member)
                if source is None:
                    stats.skipped += 1
                    continue
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
                os.utime(target, (member.mtime, member.mtime))
                stats.files += 1
        except _CORRUPT_ERRORS as exc:
            raise CorruptArchiveError(f"Deploy archive is truncated or corrupt: {exc}") from exc
    logger.debug(
        "Unpacked %d files, %d directories into %s (%d ignored)",
        stats.files,
        stats.directories,
        dest,
        stats.skipped,
    )
    return stats


def iter_archive_entries(fileobj: IO[bytes]) -> Iterator[ArchiveEntry]:
    """Yield the directory and file entries of an archive in stored order."""
    with _open_for_read(fileobj) as tar:
        for member in tar:
            if member.isdir():
                yield ArchiveEntry(path=member.name.rstrip("/"), is_dir=True)
            elif member.isfile():
                source = tar.extractfile(member)
                data = source.read() if source is not None else b""
                yield ArchiveEntry(path=member.name, is_dir=False, data=data)


def _prune_empty_parents(path: Path, root: Path) -> None:
    parent = path.parent
    while parent != root and parent.is_relative_to(root):
        try:
            parent.rmdir()
        except OSError:
            return
        parent = parent.parent


def remove_paths(dest: Path, paths: Iterable[str]) -> list[str]:
    """Delete the listed files under ``dest`` and prune directories left empty.

    Every path is validated before anything is removed.  Paths that do not
    exist are ignored.  Returns the paths actually removed.
    """
    root = dest.resolve()
    targets = [(rel, resolve_inside(dest, rel)) for rel in paths]
    removed: list[str] = []
    for rel, target in targets:
        if target.is_dir() and not target.is_symlink():
            logger.debug("Skipping delete of directory %s", rel)
            continue
        if not target.exists() and not target.is_symlink():
            continue
        target.unlink()
        removed.append(rel)
        _prune_empty_parents(target, root)
    return removed


def clear_tree(dest: Path, preserve: frozenset[str] = frozenset({VCS_DIR})) -> int:
    """Remove everything directly under ``dest`` except the preserved names."""
    removed = 0
    for child in dest.iterdir():
        if child.name in preserve:
            continue
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
        removed += 1
    return removed


def export_archive(root: Path) -> tuple[IO[bytes], PackStats]:
    """Package a live site tree (without history) into a rewound temp file."""
    spool = tempfile.SpooledTemporaryFile(max_size=_EXPORT_SPOOL_SIZE)
    try:
        stats = pack_archive(root, spool)
    except BaseException:
        spool.close()
        raise
    spool.seek(0)
    return spool, stats
