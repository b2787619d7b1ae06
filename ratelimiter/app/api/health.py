"""Health, readiness and liveness endpoints."""

from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.db.async_session import verify_connection
from ratelimiter.app.services.rate_limiter import RateLimiterService, get_rate_limiter_service

logger = get_logger(__name__)
router = APIRouter(prefix="/api/health", tags=["health"])

SERVICE_NAME = "rate-limiter"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("")
async def health() -> dict[str, Any]:
    """Basic health check: the process is serving requests."""
    return {"status": "UP", "service": SERVICE_NAME, "timestamp": _now()}


@router.get("/detailed")
async def detailed_health(
    service: Annotated[RateLimiterService, Depends(get_rate_limiter_service)],
) -> dict[str, Any]:
    """Status of the database and the bucket store."""
    dependencies: dict[str, Any] = {}

    try:
        dependencies["database"] = "UP" if await verify_connection() else "DOWN"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        dependencies["database"] = "DOWN"
        dependencies["database_error"] = str(e)[:100]

    store = service.store
    store_type = "redis" if store.__class__.__name__ == "RedisBucketStore" else "memory"
    try:
        dependencies["bucket_store"] = "UP" if await store.ping() else "DOWN"
    except Exception as e:
        logger.error(f"Bucket store health check failed: {e}")
        dependencies["bucket_store"] = "DOWN"
        dependencies["bucket_store_error"] = str(e)[:100]
    dependencies["store_type"] = store_type
    # Only a Redis-backed store has a Redis dependency to report
    if store_type == "redis":
        dependencies["redis"] = dependencies["bucket_store"]

    all_up = dependencies["database"] == "UP" and dependencies["bucket_store"] == "UP"
    return {
        "service": "UP",
        "timestamp": _now(),
        "dependencies": dependencies,
        "overall_status": "UP" if all_up else "DEGRADED",
    }


@router.get("/ready")
async def readiness() -> dict[str, str]:
    return {"status": "READY"}


@router.get("/live")
async def liveness() -> dict[str, str]:
    return {"status": "ALIVE"}
