import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from nexora_billing.core.config import get_settings

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness check. Returns 503 while draining so the load balancer stops routing traffic."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "nexora-billing"},
        )
    return {"status": "healthy", "service": "nexora-billing"}


@router.get("/ready")
async def readiness_check():
    """Readiness check - the ledger database, plus Redis when it backs rate limiting."""
    settings = get_settings()
    checks = {"database": False}

    try:
        from nexora_billing.db.base import get_session_factory

        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("readiness_database_failed", error=str(e))

    if settings.webhook_rate_limit_backend == "redis":
        checks["redis"] = False
        try:
            from nexora_billing.db.redis import get_redis

            await get_redis().ping()
            checks["redis"] = True
        except Exception as e:
            logger.error("readiness_redis_failed", error=str(e))

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
