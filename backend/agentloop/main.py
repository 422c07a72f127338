"""agentloop: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other agentloop imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from agentloop.core.logging import configure_structlog
from agentloop.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agentloop.api.routes import api_router
from agentloop.core.config import get_settings
from agentloop.db import close_db, close_redis, init_db, init_redis
from agentloop.engine.llm import AnthropicLLMClient
from agentloop.middleware.correlation import get_correlation_id, setup_correlation_middleware
from agentloop.services.engine_service import EngineService
from agentloop.store.sql import SqlStore

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler: owns the engine from startup to shutdown."""
    # SIGTERM flips this so the health check returns 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    sessions = await init_db(settings)
    logger.info("db_initialized")

    redis = await init_redis(settings)
    logger.info("redis_initialized")

    store = SqlStore(sessions)
    engine = EngineService(
        store=store,
        session_store=store,
        redis=redis,
        llm=AnthropicLLMClient(),
        settings=settings,
    )
    await engine.start()
    app.state.engine = engine

    yield

    logger.info("shutdown_begin")
    await engine.stop()
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
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors; never leaks internals."""
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


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    ``use_lifespan=False`` builds the app without touching Postgres or Redis;
    the caller is then responsible for putting an engine on ``app.state``.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Long-running agentic task execution engine",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
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
        "agentloop.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
