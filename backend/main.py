"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from sqlalchemy.exc import OperationalError

from backend.api.deploy import router as deploy_router
from backend.api.health import router as health_router
from backend.api.sites import router as sites_router
from backend.api.users import router as users_router
from backend.config import Settings
from backend.database import create_engine
from backend.exceptions import (
    ArchiveError,
    InternalServerError,
    NoChangesError,
    PermissionDeniedError,
    SiteDeployError,
    SiteExistsError,
    SiteNotFoundError,
    UserExistsError,
    UserNotFoundError,
    VersionControlError,
    VersionNotFoundError,
)
from backend.models import Base
from backend.services.deploy_service import SiteDeployer
from backend.services.lock_service import SiteLocks
from backend.services.site_service import SiteRegistry
from backend.services.static_service import list_site_names, locate
from backend.services.version_service import VersionStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases.
_DOMAIN_ERROR_STATUS: tuple[tuple[type[SiteDeployError], int], ...] = (
    (SiteNotFoundError, 404),
    (UserNotFoundError, 404),
    (VersionNotFoundError, 404),
    (SiteExistsError, 409),
    (UserExistsError, 409),
    (NoChangesError, 409),
    (PermissionDeniedError, 403),
    (ArchiveError, 400),
    (VersionControlError, 502),
)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


def ensure_web_root(web_root: Path) -> None:
    """Create the sites directory if it is missing."""
    if web_root.exists() and not web_root.is_dir():
        msg = f"Web root exists but is not a directory: {web_root}"
        raise NotADirectoryError(msg)
    if not web_root.exists():
        logger.info("Creating web root at %s", web_root)
        web_root.mkdir(parents=True)


def _status_for(exc: SiteDeployError) -> int:
    for error_type, status_code in _DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting SiteDeploy (debug=%s, mode=%s)", settings.debug, settings.mode)

    db_url = settings.database_url
    if db_url.startswith("sqlite"):
        db_path = db_url.split("///", 1)[-1] if "///" in db_url else None
        if db_path:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        engine, session_factory = create_engine(settings)
        app.state.engine = engine
        app.state.session_factory = session_factory
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database path and permissions.", exc
        )
        raise

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:
        logger.critical("Failed to create database schema: %s.", exc)
        raise

    try:
        ensure_web_root(settings.web_root)
    except Exception as exc:
        logger.critical("Failed to initialize web root at %s: %s.", settings.web_root, exc)
        raise

    from backend.services.auth_service import ensure_admin_user

    try:
        async with session_factory() as session:
            await ensure_admin_user(session, settings)
            await app.state.site_registry.reload(session)
    except Exception as exc:
        logger.critical("Failed to load users and sites: %s.", exc)
        raise
    logger.info("Loaded %d sites from %s", len(app.state.site_registry), settings.web_root)

    yield

    try:
        await engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("SiteDeploy stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="SiteDeploy",
        description="Self-hosted static site deployment with version history",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings
    version_store = (
        VersionStore(settings.web_root, timeout=settings.git_timeout_seconds)
        if settings.enable_versioning
        else None
    )
    app.state.version_store = version_store
    app.state.deployer = SiteDeployer(settings.web_root, version_store)
    app.state.site_registry = SiteRegistry()
    app.state.site_locks = SiteLocks()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        return response

    app.include_router(health_router)
    app.include_router(sites_router)
    app.include_router(deploy_router)
    app.include_router(users_router)

    # Global exception handlers

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(SiteDeployError)
    async def domain_error_handler(request: Request, exc: SiteDeployError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(
                "%s in %s %s: %s",
                type(exc).__name__,
                request.method,
                request.url.path,
                exc,
                exc_info=exc,
            )
            detail = "Version control operation failed"
        else:
            logger.warning(
                "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
            )
            detail = str(exc)
        return JSONResponse(status_code=status_code, content={"detail": detail})

    @app.exception_handler(InternalServerError)
    async def internal_server_error_handler(
        request: Request, exc: InternalServerError
    ) -> JSONResponse:
        logger.error(
            "InternalServerError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            raise exc
        logger.error("OSError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed"},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    # Deployed sites are served for every path the API does not claim.
    @app.api_route("/{full_path:path}", methods=["GET", "HEAD"], include_in_schema=False)
    async def serve_site(request: Request, full_path: str) -> Response:
        path = "/" + full_path
        if path == "/api" or path.startswith("/api/"):
            return JSONResponse(status_code=404, content={"detail": "Not Found"})
        if settings.mode == "path" and path == "/":
            return JSONResponse(content={"sites": list_site_names(settings.web_root)})

        static_file = locate(settings, request.headers.get("host", ""), path)
        if static_file is None:
            return JSONResponse(status_code=404, content={"detail": "File not found"})
        etag = static_file.etag
        headers = {"Cache-Control": static_file.cache_control, "ETag": etag}
        if request.headers.get("if-none-match") == etag:
            return Response(status_code=304, headers=headers)
        return FileResponse(static_file.path, headers=headers)

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
