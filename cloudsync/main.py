"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from cloudsync.api.connections import router as connections_router
from cloudsync.api.health import router as health_router
from cloudsync.api.oauth import router as oauth_router
from cloudsync.api.sync import router as sync_router
from cloudsync.config import Settings
from cloudsync.database import create_engine, init_db
from cloudsync.exceptions import (
    AuthError,
    CloudSyncError,
    ConfigurationError,
    NotFoundError,
    OAuthStateError,
    QueueFullError,
    StorageUnavailable,
    TransientNetworkError,
)
from cloudsync.providers.oauth_state import OAuthStateStore
from cloudsync.providers.registry import create_provider
from cloudsync.services.connection_store import ConnectionStore
from cloudsync.services.sync_engine import SyncEngine
from cloudsync.services.sync_queue import SyncQueue
from cloudsync.services.token_manager import TokenLifecycleManager

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from cloudsync.services.token_manager import ProviderFactory

logger = logging.getLogger(__name__)


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
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


async def init_services(
    app: FastAPI,
    settings: Settings,
    *,
    provider_factory: ProviderFactory = create_provider,
) -> SyncEngine:
    """Open storage and wire the sync services onto ``app.state``."""
    try:
        engine, session_factory = create_engine(settings)
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database path and permissions.", exc
        )
        raise
    app.state.engine = engine
    app.state.session_factory = session_factory
    await init_db(engine)

    store = ConnectionStore(session_factory, settings.secret_key)
    queue = SyncQueue(
        session_factory,
        max_size=settings.max_offline_queue_size,
        max_retries=settings.max_retries,
    )
    token_manager = TokenLifecycleManager(
        store,
        settings.provider_secrets(),
        OAuthStateStore(settings.secret_key, ttl_seconds=settings.oauth_state_ttl_seconds),
        redirect_uri=settings.oauth_redirect_uri,
        app_folder_name=settings.app_folder_name,
        provider_factory=provider_factory,
    )
    sync_engine = SyncEngine(
        queue,
        token_manager,
        store,
        conflict_strategy=settings.conflict_strategy,
        operation_timeout=settings.operation_timeout_seconds,
        sync_interval=settings.sync_interval_seconds,
        max_file_size_bytes=settings.max_file_size_mb * 1024 * 1024,
        auto_sync=settings.auto_sync_enabled,
        sync_on_focus_lost=settings.sync_on_focus_lost,
        sync_on_app_start=settings.sync_on_app_start,
    )
    app.state.connection_store = store
    app.state.sync_queue = queue
    app.state.token_manager = token_manager
    app.state.sync_engine = sync_engine
    return sync_engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: build the sync services, run the engine, tear down."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting cloudsync (debug=%s)", settings.debug)

    sync_engine = await init_services(app, settings)
    try:
        await sync_engine.on_app_start()
    except StorageUnavailable as exc:
        logger.critical("Initial sync failed: %s", exc)
        raise

    yield

    try:
        await sync_engine.shutdown()
    except Exception as exc:
        logger.error("Error during sync engine shutdown: %s", exc, exc_info=True)

    try:
        await app.state.engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("cloudsync stopped")


def _error_response(
    request: Request, exc: Exception, status_code: int, detail: str
) -> JSONResponse:
    logger.warning(
        "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
    )
    return JSONResponse(status_code=status_code, content={"detail": detail})


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="cloudsync",
        description="Local-first sync of personal records to cloud storage",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings

    app.include_router(health_router)
    app.include_router(oauth_router)
    app.include_router(connections_router)
    app.include_router(sync_router)

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

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable_handler(
        request: Request, exc: StorageUnavailable
    ) -> JSONResponse:
        logger.error(
            "StorageUnavailable in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(status_code=503, content={"detail": "Cannot reach local storage"})

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        return _error_response(request, exc, 503, str(exc))

    @app.exception_handler(OAuthStateError)
    async def oauth_state_handler(request: Request, exc: OAuthStateError) -> JSONResponse:
        return _error_response(request, exc, 400, str(exc))

    @app.exception_handler(QueueFullError)
    async def queue_full_handler(request: Request, exc: QueueFullError) -> JSONResponse:
        return _error_response(request, exc, 429, str(exc))

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        return _error_response(request, exc, 400, f"Authorization failed: {exc}")

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(request, exc, 404, str(exc))

    @app.exception_handler(TransientNetworkError)
    async def network_error_handler(request: Request, exc: TransientNetworkError) -> JSONResponse:
        return _error_response(request, exc, 502, "Cloud provider unreachable")

    @app.exception_handler(CloudSyncError)
    async def cloudsync_error_handler(request: Request, exc: CloudSyncError) -> JSONResponse:
        return _error_response(request, exc, 502, str(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error_response(request, exc, 422, str(exc))

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "cloudsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
