"""Rate limit check endpoints."""

from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from ratelimiter.app.core.logging import get_log_context, get_logger
from ratelimiter.app.middleware.request_id import get_request_id
from ratelimiter.app.services.rate_limiter import RateLimiterService, get_rate_limiter_service

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["rate-limit"])

ANONYMOUS_PRINCIPAL = "anonymous"

ServiceDep = Annotated[RateLimiterService, Depends(get_rate_limiter_service)]


class RateLimitRequest(BaseModel):
    """Body of POST /api/check-limit."""

    resource: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    metadata: Optional[str] = None

    @field_validator("resource")
    @classmethod
    def validate_resource(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Resource identifier is required")
        return v


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post("/check-limit")
async def check_limit(body: RateLimitRequest, request: Request, service: ServiceDep) -> JSONResponse:
    """Check whether a request is allowed and consume a token if it is.

    Returns 200 with allowed=true, or 429 with allowed=false.
    """
    user_id = body.user_id if body.user_id is not None else ANONYMOUS_PRINCIPAL
    logger.info(
        f"Rate limit check requested: userId={user_id}, resource={body.resource}",
        extra=get_log_context(
            request_id=get_request_id(request), principal_id=user_id, resource=body.resource
        ),
    )

    decision = await service.allow_request(
        user_id,
        body.resource,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return JSONResponse(
        status_code=200 if decision.allowed else 429,
        content=decision.to_dict(),
    )


@router.get("/limit-status")
async def limit_status(
    service: ServiceDep,
    user_id: str = Query(..., alias="userId"),
    resource: str = Query(...),
) -> dict[str, Any]:
    """Current quota for a pair, without consuming a token."""
    status = await service.get_status(user_id, resource)
    remaining = status.remaining_tokens
    return {
        "allowed": remaining > 0,
        "remainingTokens": remaining,
        "resetTime": status.reset_time_millis,
        "tier": status.tier,
        "message": "Quota available" if remaining > 0 else "Quota exhausted",
        "metadata": status.metadata.to_dict() if status.metadata else None,
    }
