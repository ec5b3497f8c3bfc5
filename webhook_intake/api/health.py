"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + queue depth)
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_intake.database import get_db
from webhook_intake.services.work_queue import queue_depth

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Redis is reported but not required: the pipeline degrades to DB polling.
    """
    checks = {"database": False, "redis": False}
    queue = None

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
        queue = await queue_depth(db)
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from webhook_intake.utils.dedup import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    if all(checks.values()):
        status = "ready"
    elif checks["database"]:
        status = "degraded"
    else:
        status = "unavailable"

    return {
        "status": status,
        "checks": checks,
        "queue": queue,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
