"""Site, deploy and version request/response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field


class SiteCreate(BaseModel):
    """Request to create a site. The name is sanitized server-side."""

    name: str = Field(min_length=1, max_length=100)
    desc: str = Field(default="", max_length=1000)


class SiteUpdate(BaseModel):
    """Request to change a site's description."""

    name: str = Field(min_length=1, max_length=100)
    desc: str = Field(default="", max_length=1000)


class SiteRef(BaseModel):
    """Request naming a single site."""

    name: str = Field(min_length=1, max_length=100)


class SiteAuthorize(BaseModel):
    """Grant deploy access to one or more users."""

    site_name: str = Field(
        min_length=1, max_length=100, validation_alias=AliasChoices("site_name", "siteName")
    )
    username: str = ""
    usernames: list[str] = Field(default_factory=list)


class SiteUnauthorize(BaseModel):
    """Revoke one user's deploy access."""

    site_name: str = Field(
        min_length=1, max_length=100, validation_alias=AliasChoices("site_name", "siteName")
    )
    username: str = Field(min_length=1)


class SiteResponse(BaseModel):
    """Site as returned to clients."""

    name: str
    desc: str
    domain: str
    url: str
    owner: str
    users: list[str]
    created_at: str
    updated_at: str


class SiteListResponse(BaseModel):
    sites: list[SiteResponse]


class AuthorizeResponse(BaseModel):
    message: str
    site: SiteResponse
    skipped: list[str] = Field(default_factory=list)


class MessageResponse(BaseModel):
    message: str


class VersionResponse(BaseModel):
    """One entry of a site's deployment history."""

    hash: str
    short_hash: str
    message: str
    author: str
    date: datetime


class DeployResponse(BaseModel):
    """Result of a deploy request."""

    message: str
    mode: str
    files_written: int
    files_deleted: int
    version: VersionResponse | None = None
    warnings: list[str] = Field(default_factory=list)


class RollbackRequest(BaseModel):
    """Restore a site to an earlier version."""

    name: str = Field(min_length=1, max_length=100)
    hash: str = Field(min_length=4, max_length=40)
    message: str = Field(default="", max_length=500)


class RollbackResponse(BaseModel):
    message: str
    version: VersionResponse
