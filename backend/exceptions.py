"""Application-level exception types.

Convention:
- ``InternalServerError``: errors whose details must never reach clients.
  The global handler logs the full message at ERROR and returns a generic
  "Internal server error" (500) to the client.
- ``ValueError``: input validation errors that are safe to forward to
  clients (a site name that sanitizes to nothing, an empty field, etc.).  The
  global ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
- ``SiteDeployError`` subclasses: typed domain outcomes.  Each one maps to a
  distinct status code in ``backend/main.py`` so callers can tell "not found"
  apart from "broken".
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``backend/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class SiteDeployError(Exception):
    """Base class for deployment domain errors."""


class SiteNotFoundError(SiteDeployError):
    """The named site is not registered or its directory is missing."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Site not found: {name}")
        self.name = name


class SiteExistsError(SiteDeployError):
    """A site with this name (or its directory) already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Site already exists: {name}")
        self.name = name


class UserNotFoundError(SiteDeployError):
    """The named user does not exist."""

    def __init__(self, username: str) -> None:
        super().__init__(f"User not found: {username}")
        self.username = username


class UserExistsError(SiteDeployError):
    """A user with this name already exists."""

    def __init__(self, username: str) -> None:
        super().__init__(f"User already exists: {username}")
        self.username = username


class PermissionDeniedError(SiteDeployError):
    """The caller is authenticated but may not act on this site."""


class VersionNotFoundError(SiteDeployError):
    """The requested version id does not exist in the site's history."""

    def __init__(self, version_id: str) -> None:
        super().__init__(f"Version not found: {version_id}")
        self.version_id = version_id


class NoChangesError(SiteDeployError):
    """A commit was requested but the working tree matches the last version."""


class VersionControlError(SiteDeployError):
    """A version-control command failed, timed out, or could not be run."""


class ArchiveError(SiteDeployError):
    """The deploy archive cannot be applied."""


class UnsafeArchivePathError(ArchiveError):
    """An archive entry would be written outside the destination root."""

    def __init__(self, entry_name: str) -> None:
        super().__init__(f"Unsafe path in archive: {entry_name}")
        self.entry_name = entry_name


class CorruptArchiveError(ArchiveError):
    """The archive stream is not a readable gzip-compressed tar."""
