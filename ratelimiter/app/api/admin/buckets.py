from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response

from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.services.rate_limiter import RateLimiterService, get_rate_limiter_service

logger = get_logger(__name__)
router = APIRouter()


@router.delete("/{user_id}/{resource:path}", status_code=204)
async def reset_bucket(
    user_id: str,
    resource: str,
    service: Annotated[RateLimiterService, Depends(get_rate_limiter_service)],
) -> Response:
    """Clear a bucket so the pair starts again from full capacity."""
    if not await service.reset(user_id, resource):
        raise HTTPException(status_code=404, detail="Bucket not found")
    return Response(status_code=204)
