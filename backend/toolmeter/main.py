"""Toolmeter backend: FastAPI application entry point."""

import asyncio
import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other app imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from toolmeter.core.logging import configure_structlog
from toolmeter.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from toolmeter.api.routes import api_router
from toolmeter.core.config import Settings, get_settings
from toolmeter.db import close_db, close_redis, get_engine, get_redis, get_session_factory, init_db, init_redis
from toolmeter.entitlements.plans import PriceCatalog
from toolmeter.middleware.correlation import get_correlation_id, setup_correlation_middleware
from toolmeter.services import build_services
from toolmeter.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)


def validate_price_map(settings: Settings) -> None:
    """Fail fast if any Stripe price ID is missing at startup."""
    if settings.debug:
        return  # Skip in dev/test mode
    missing = PriceCatalog.from_settings(settings).missing_plans()
    if missing:
        raise RuntimeError(f"Missing Stripe price IDs at startup: {[plan.value for plan in missing]}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Graceful shutdown flag: SIGTERM flips it so the ALB health check returns 503
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    try:
        signal.signal(signal.SIGTERM, handle_sigterm)
    except ValueError:
        # Not the main thread (e.g. an in-process test client)
        logger.debug("sigterm_handler_not_installed")

    settings: Settings = app.state.settings
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_price_map(settings)
    logger.info("stripe_price_map_validated")

    await init_db(settings.database_url)
    logger.info("db_initialized")

    if settings.redis_url:
        await init_redis(settings.redis_url)
        logger.info("redis_initialized")

    app.state.services = build_services(
        settings,
        get_session_factory(),
        dialect=get_engine().dialect.name,
        redis=get_redis(),
    )

    tasks: list[asyncio.Task] = []
    if settings.background_jobs_enabled:
        for name, job in app.state.services.background_jobs().items():
            tasks.append(asyncio.create_task(job, name=name))
        logger.info("background_jobs_started", jobs=[task.get_name() for task in tasks])

    yield

    # Shutdown
    logger.info("shutdown_begin")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    # Extract user_id if available
    user_id = getattr(request.state, "user_id", None)

    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        user_id=user_id,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    user_id = getattr(request.state, "user_id", None)

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        user_id=user_id,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # Return generic 500 (no internal details leaked)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app(settings: Settings | None = None, tools: ToolRegistry | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Usage entitlements and billing consistency for the AI tools dashboard",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.tools = tools or ToolRegistry()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, *settings.clerk_allowed_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    # Exception handlers
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    # Include API routes
    app.include_router(api_router, prefix="/api")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "toolmeter.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
