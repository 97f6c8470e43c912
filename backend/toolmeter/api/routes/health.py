import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from toolmeter.core.exceptions import StoreUnavailableError
from toolmeter.db.redis import get_redis
from toolmeter.services import EntitlementServices, get_services

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for load balancer.

    Returns 503 during graceful shutdown so ALB stops routing traffic.
    """
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "toolmeter"},
        )
    return {"status": "healthy", "service": "toolmeter"}


@router.get("/ready")
async def readiness_check(services: EntitlementServices = Depends(get_services)):
    """Readiness check: database, cached store health and Redis when configured.

    A degraded store still serves traffic from the fallback tracker, so this
    reports the replay backlog alongside the checks.
    """
    checks = {"database": False, "store_healthy": services.health.last_known}

    try:
        await services.store.ping()
        checks["database"] = True
    except StoreUnavailableError as e:
        logger.error("readiness_database_failed", error=str(e))

    redis = get_redis()
    if redis is not None:
        checks["redis"] = False
        try:
            await redis.ping()
            checks["redis"] = True
        except Exception as e:
            logger.error("readiness_redis_failed", error=str(e), error_type=type(e).__name__)

    all_healthy = all(checks.values())
    status_code = 200 if all_healthy else 503

    return JSONResponse(
        status_code=status_code,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
            "fallback_queue_depth": await services.tracker.queue_depth(),
            "webhook_retry_queue_depth": len(services.retry_queue),
        },
    )
