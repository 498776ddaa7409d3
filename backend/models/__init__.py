"""SQLAlchemy ORM models for SiteDeploy."""

from backend.models.base import Base
from backend.models.site import Site, SiteMember
from backend.models.user import User

__all__ = [
    "Base",
    "Site",
    "SiteMember",
    "User",
]
