"""Bounty Reconciler backend: FastAPI application entry point."""

import asyncio
import contextlib
import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other reconciler imports; structlog
# caches the processor chain on first use.
from reconciler.core.logging import configure_structlog
from reconciler.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reconciler.api.routes import api_router
from reconciler.core.config import get_settings
from reconciler.db import close_db, close_redis, get_session_factory, init_db, init_redis
from reconciler.integrations.payments import configure_stripe
from reconciler.middleware.correlation import get_correlation_id, setup_correlation_middleware
from reconciler.services.maintenance import MaintenanceLoop

logger = structlog.get_logger(__name__)


def validate_webhook_secrets() -> None:
    """Warn at startup about receivers that will answer 503."""
    settings = get_settings()
    missing = [
        name
        for name, value in (
            ("stripe_webhook_secret", settings.stripe_webhook_secret),
            ("github_webhook_secret", settings.github_webhook_secret),
        )
        if not value
    ]
    if missing:
        logger.warning("webhook_secrets_missing", missing=missing)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the health check returns 503 while draining
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    configure_stripe()
    validate_webhook_secrets()

    maintenance_task = asyncio.create_task(MaintenanceLoop(get_session_factory()).run())

    yield

    logger.info("shutdown_begin")
    maintenance_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await maintenance_task
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Keeps memberships, bounty escrow, billing customers and GitHub installations "
        "in step with Stripe, GitHub and the billing ledger",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "reconciler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
