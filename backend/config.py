"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """SiteDeploy server settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database (users, sites, authorizations)
    database_url: str = "sqlite+aiosqlite:///data/db/sitedeploy.db"

    # Sites
    web_root: Path = Path("./websites")
    mode: Literal["subdomain", "path"] = "subdomain"
    base_domain: str = "example.com"
    single_domain: str = ""
    enable_versioning: bool = True
    git_timeout_seconds: float = Field(default=30.0, gt=0)
    max_upload_size: int = Field(default=32 * 1024 * 1024, ge=1)

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)

    # CORS
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Auth
    api_key: str = ""

    # Admin bootstrap
    admin_username: str = "admin"
    admin_password: str = "admin123"

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.admin_password == "admin123" or len(self.admin_password) < 12:
            violations.append("ADMIN_PASSWORD must be overridden with a strong value (>=12 chars)")
        if self.api_key and len(self.api_key) < 32:
            violations.append("API_KEY, when set, must be a high-entropy value (>=32 chars)")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
