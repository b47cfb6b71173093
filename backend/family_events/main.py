"""Family Event Planner: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other family_events imports;
# structlog caches the processor chain on first use.
from family_events.core.logging import configure_structlog
from family_events.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from family_events.api.routes import api_router
from family_events.core.config import get_settings
from family_events.core.exceptions import PersistenceError
from family_events.middleware.correlation import get_correlation_id, setup_correlation_middleware
from family_events.services.container import Services, build_services

logger = structlog.get_logger(__name__)


def _make_lifespan(prebuilt: Services | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the pipeline on startup, stop the scheduler and close the store on shutdown."""
        app.state.shutting_down = False

        def handle_sigterm(signum, frame):
            app.state.shutting_down = True
            logger.info("sigterm_received", action="health_check_503_draining_connections")

        if prebuilt is None:
            signal.signal(signal.SIGTERM, handle_sigterm)

        settings = get_settings()
        logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

        services = prebuilt or await build_services(settings)
        app.state.services = services
        logger.info("services_initialized", store=type(services.store).__name__)

        if services.settings.scheduler_enabled:
            services.scheduler.start()
            logger.info("scheduler_enabled", interval_seconds=services.settings.scheduler_interval_seconds)

        yield

        logger.info("shutdown_begin")
        await services.close()
        logger.info("shutdown_complete")

    return lifespan


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Log HTTPExceptions with a debug_id and return a sanitized body."""
    debug_id = str(uuid.uuid4())
    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def persistence_exception_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    """Store outages are retryable: 503 tells webhook providers to redeliver."""
    debug_id = str(uuid.uuid4())
    logger.error(
        "persistence_unavailable",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage temporarily unavailable", "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled errors with traceback, return a generic 500."""
    debug_id = str(uuid.uuid4())
    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app(services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Prebuilt services (tests); built from Settings when omitted
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Family event discovery, SMS approval and automated registration",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=_make_lifespan(services),
    )

    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(PersistenceError)(persistence_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "family_events.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
