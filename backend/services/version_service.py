"""Version store: per-site append-only deployment history.

The store depends only on the ``VersionBackend`` protocol.  ``GitBackend``
implements it with the git CLI; every command runs with a bounded timeout and
any failure (non-zero exit, timeout, missing binary) surfaces as
``VersionControlError``.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from backend.exceptions import NoChangesError, VersionControlError, VersionNotFoundError
from backend.services.datetime_service import parse_datetime

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 30.0
_COMMIT_RE = re.compile(r"^[0-9a-f]{4,40}$")
_FIELD_SEP = "\x1f"
_LOG_FORMAT = _FIELD_SEP.join(("%H", "%s", "%an", "%aI"))
_DEFAULT_AUTHOR = "SiteDeploy"
_AUTHOR_NAME_RE = re.compile(r"[<>\n\r]")
DEFAULT_LIST_LIMIT = 20
AUTO_SAVE_MESSAGE = "Auto-save before restoring {short}"


@dataclass(frozen=True)
class VersionRecord:
    """One entry in a site's deployment history."""

    id: str
    message: str
    author: str
    date: datetime

    @property
    def short_id(self) -> str:
        return self.id[:8]


class VersionBackend(Protocol):
    """Version-control capability the store depends on."""

    def init(self) -> None: ...

    def commit(self, message: str, author: str | None = None) -> str | None: ...

    def commit_empty(self, message: str, author: str | None = None) -> str: ...

    def log(self, limit: int) -> list[VersionRecord]: ...

    def checkout_path(self, version: str) -> None: ...

    def reset_hard(self, version: str) -> None: ...

    def is_dirty(self) -> bool: ...

    def head(self) -> str | None: ...

    def version_exists(self, version: str) -> bool: ...


def _author_arg(author: str | None) -> list[str]:
    if not author:
        return []
    name = _AUTHOR_NAME_RE.sub("", author).strip() or _DEFAULT_AUTHOR
    return [f"--author={name} <{name}@sitedeploy.local>"]


class GitBackend:
    """Wraps git CLI operations on one site directory."""

    def __init__(self, site_dir: Path, timeout: float = _GIT_TIMEOUT_SECONDS) -> None:
        self.site_dir = site_dir
        self.timeout = timeout

    @property
    def initialized(self) -> bool:
        return (self.site_dir / ".git").exists()

    def _env(self) -> dict[str, str]:
        # Stop repository discovery at the site directory.
        ceiling = self.site_dir.resolve().parent
        return {**os.environ, "GIT_CEILING_DIRECTORIES": str(ceiling)}

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run a git command in the site directory."""
        try:
            return subprocess.run(
                ["git", *args],
                cwd=self.site_dir,
                env=self._env(),
                check=check,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.strip() if exc.stderr else "no stderr"
            raise VersionControlError(
                f"git {args[0]} failed (exit {exc.returncode}): {stderr}"
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise VersionControlError(
                f"git {args[0]} timed out after {self.timeout:g}s in {self.site_dir}"
            ) from exc
        except OSError as exc:
            raise VersionControlError(f"Cannot run git in {self.site_dir}: {exc}") from exc

    def init(self) -> None:
        """Initialize a repo if one doesn't exist. History starts at the first commit."""
        if self.initialized:
            return
        self._run("init", "-q")
        self._run("config", "user.email", "deployer@sitedeploy.local")
        self._run("config", "user.name", _DEFAULT_AUTHOR)
        self._run("config", "core.quotepath", "false")
        logger.info("Initialized git repo in %s", self.site_dir)

    def commit(self, message: str, author: str | None = None) -> str | None:
        """Stage all changes and commit. Returns the commit hash or None if clean."""
        self._run("add", "-A")
        result = self._run("diff", "--cached", "--quiet", check=False)
        if result.returncode == 0:
            return None
        if result.returncode != 1:
            raise VersionControlError(f"git diff failed (exit {result.returncode})")
        self._run("commit", "-q", "-m", message, *_author_arg(author))
        return self.head()

    def commit_empty(self, message: str, author: str | None = None) -> str:
        """Record a commit even though the tree did not change."""
        self._run("commit", "-q", "--allow-empty", "-m", message, *_author_arg(author))
        head = self.head()
        if head is None:
            raise VersionControlError("Empty commit did not produce a HEAD")
        return head

    def log(self, limit: int) -> list[VersionRecord]:
        """Return up to ``limit`` commits, newest first. Empty repo gives []."""
        if self.head() is None:
            return []
        result = self._run("log", f"--pretty=format:{_LOG_FORMAT}", f"-n{limit}")
        records: list[VersionRecord] = []
        for line in result.stdout.splitlines():
            parts = line.split(_FIELD_SEP)
            if len(parts) != 4:
                logger.warning("Skipping unparseable git log line in %s: %r", self.site_dir, line)
                continue
            commit_hash, subject, author, date = parts
            records.append(
                VersionRecord(
                    id=commit_hash,
                    message=subject,
                    author=author,
                    date=parse_datetime(date),
                )
            )
        return records

    def checkout_path(self, version: str) -> None:
        """Make the working tree and index match ``version`` exactly.

        Files that did not exist at ``version`` are removed.
        """
        self._run("restore", f"--source={version}", "--staged", "--worktree", "--", ".")

    def reset_hard(self, version: str) -> None:
        """Discard uncommitted and untracked changes, moving HEAD to ``version``."""
        self._run("reset", "-q", "--hard", version)
        self._run("clean", "-q", "-fd")

    def is_dirty(self) -> bool:
        if not self.initialized:
            return False
        result = self._run("status", "--porcelain")
        return bool(result.stdout.strip())

    def head(self) -> str | None:
        """Return the current HEAD commit hash, or None if the repo has no commits."""
        if not self.initialized:
            return None
        result = self._run("rev-parse", "--verify", "-q", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def version_exists(self, version: str) -> bool:
        """Check if a commit hash exists in the repo."""
        if not _COMMIT_RE.match(version) or not self.initialized:
            return False
        result = self._run("cat-file", "-t", version, check=False)
        return result.returncode == 0 and result.stdout.strip() == "commit"


class VersionStore:
    """Append-only history for every site under ``web_root``."""

    def __init__(
        self,
        web_root: Path,
        backend_factory: Callable[[Path], VersionBackend] | None = None,
        timeout: float = _GIT_TIMEOUT_SECONDS,
    ) -> None:
        self.web_root = web_root
        if backend_factory is None:
            backend_factory = lambda site_dir: GitBackend(site_dir, timeout=timeout)  # noqa: E731
        self._backend_factory = backend_factory

    def backend(self, site: str) -> VersionBackend:
        return self._backend_factory(self.web_root / site)

    def init(self, site: str) -> None:
        """Start tracking a site (Uninitialized -> Tracked)."""
        self.backend(site).init()

    def _record(self, backend: VersionBackend, commit_hash: str) -> VersionRecord:
        for record in backend.log(1):
            if record.id == commit_hash:
                return record
        raise VersionControlError(f"Commit {commit_hash} missing from history")

    def commit(self, site: str, message: str, author: str | None = None) -> VersionRecord:
        """Record the current tree. Raises ``NoChangesError`` if nothing changed."""
        backend = self.backend(site)
        backend.init()
        commit_hash = backend.commit(message, author)
        if commit_hash is None:
            raise NoChangesError(f"No changes to commit for site {site}")
        logger.info("Committed %s for site %s: %s", commit_hash[:8], site, message)
        return self._record(backend, commit_hash)

    def try_commit(
        self,
        site: str,
        message: str,
        author: str | None = None,
        warnings: list[str] | None = None,
    ) -> VersionRecord | None:
        """Commit, logging an error on failure instead of raising.

        Used by deploy paths: the new content is already live, so a history
        failure is reported (appended to ``warnings``) but does not undo it.
        """
        try:
            return self.commit(site, message, author)
        except NoChangesError:
            logger.info("Deploy to %s produced no content change", site)
            return None
        except VersionControlError as exc:
            logger.error("Version commit failed for site %s (%s): %s", site, message, exc)
            if warnings is not None:
                warnings.append(
                    "Version commit failed; content is live but history was not recorded."
                )
            return None

    def list(self, site: str, limit: int = DEFAULT_LIST_LIMIT) -> list[VersionRecord]:
        """Return history newest first, bounded to ``limit``."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        return self.backend(site).log(limit)

    def restore(
        self, site: str, version_id: str, message: str, author: str | None = None
    ) -> VersionRecord:
        """Restore ``version_id`` as a new commit on top of history.

        Uncommitted changes are first saved under an automatic message so
        nothing is lost.  Restoring the version the tree already matches
        records an empty "no functional change" commit.
        """
        backend = self.backend(site)
        if not backend.version_exists(version_id):
            raise VersionNotFoundError(version_id)

        short = version_id[:8]
        if backend.is_dirty():
            saved = backend.commit(AUTO_SAVE_MESSAGE.format(short=short), author)
            if saved is not None:
                logger.warning(
                    "Site %s had uncommitted changes; saved as %s before restore",
                    site,
                    saved[:8],
                )

        backend.checkout_path(version_id)
        commit_hash = backend.commit(message, author)
        if commit_hash is None:
            commit_hash = backend.commit_empty(f"{message} (no functional change)", author)
            logger.info("Restore of %s to %s changed nothing", site, short)
        else:
            logger.info("Restored site %s to %s as %s", site, short, commit_hash[:8])
        return self._record(backend, commit_hash)

    def rollback_working_tree(self, site: str) -> None:
        """Throw away a half-applied change, returning the tree to the last version."""
        backend = self.backend(site)
        if backend.head() is None:
            return
        backend.reset_hard("HEAD")
        logger.warning("Reset site %s working tree to last committed version", site)
