import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from agentloop.db import ping_db, ping_redis

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness check for the load balancer.

    Returns 503 during graceful shutdown so traffic drains away.
    """
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "agentloop"},
        )
    return {"status": "healthy", "service": "agentloop"}


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness check - verifies dependencies and the worker pool."""
    checks = {"database": False, "redis": False, "workers": False}

    try:
        await ping_db()
        checks["database"] = True
    except Exception as e:
        logger.error("readiness_database_failed", error=str(e), error_type=type(e).__name__)

    try:
        await ping_redis()
        checks["redis"] = True
    except Exception as e:
        logger.error("readiness_redis_failed", error=str(e), error_type=type(e).__name__)

    engine = getattr(request.app.state, "engine", None)
    checks["workers"] = engine is not None and engine.workers.running

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
