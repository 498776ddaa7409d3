"""Shared test fixtures for SiteDeploy."""

from __future__ import annotations

import shutil
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from backend.config import Settings
from backend.main import create_app

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

ADMIN_HEADERS = {"X-Username": "admin", "X-Password": "admin123"}

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (DB schema, web
    root, admin user, site registry) because ASGITransport does not trigger it.
    """
    from backend.database import create_engine as create_db_engine
    from backend.main import ensure_web_root
    from backend.models.base import Base
    from backend.services.auth_service import ensure_admin_user

    app = create_app(settings)
    settings.validate_runtime_security()

    engine, session_factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    ensure_web_root(settings.web_root)

    async with session_factory() as session:
        await ensure_admin_user(session, settings)
        await app.state.site_registry.reload(session)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await engine.dispose()


@pytest.fixture
def tmp_web_root(tmp_path: Path) -> Path:
    """Create an empty web root for site directories."""
    web_root = tmp_path / "websites"
    web_root.mkdir()
    return web_root


@pytest.fixture
def test_settings(tmp_web_root: Path, tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        web_root=tmp_web_root,
        base_domain="example.com",
        port=8080,
        admin_username="admin",
        admin_password="admin123",
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    from backend.database import create_engine as create_db_engine
    from backend.models.base import Base

    engine, _ = create_db_engine(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    from sqlalchemy.ext.asyncio import async_sessionmaker

    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
