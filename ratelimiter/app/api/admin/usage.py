from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Query

from ratelimiter.app.db.async_session import SessionDep
from ratelimiter.app.db.crud import (
    calculate_block_rate,
    get_denied_logs_between,
    get_top_users_by_request_count,
)

router = APIRouter()


def _window(hours: int) -> tuple[datetime, datetime]:
    end = datetime.now(timezone.utc)
    return end - timedelta(hours=hours), end


@router.get("/summary")
async def usage_summary(
    session: SessionDep,
    hours: int = Query(24, ge=1, le=24 * 30),
    limit: int = Query(10, ge=1, le=100),
) -> dict[str, Any]:
    """Block rate and busiest users over the last `hours`."""
    start, end = _window(hours)
    block_rate = await calculate_block_rate(session, start, end)
    top_users = await get_top_users_by_request_count(session, start, end, limit=limit)
    return {
        "from": start.isoformat(),
        "to": end.isoformat(),
        "denied": block_rate["denied"],
        "total": block_rate["total"],
        "blockRate": block_rate["block_rate"],
        "topUsers": [{"userId": user_id, "requests": n} for user_id, n in top_users],
    }


@router.get("/denied")
async def denied_requests(
    session: SessionDep,
    hours: int = Query(1, ge=1, le=24 * 30),
) -> list[dict[str, Any]]:
    """Denied checks over the last `hours`, oldest first."""
    start, end = _window(hours)
    return [
        {
            "userId": log.user_id,
            "resource": log.resource,
            "remainingTokens": log.remaining_tokens,
            "algorithm": log.algorithm,
            "responseTimeMs": log.response_time_ms,
            "ipAddress": log.ip_address,
            "createdAt": log.created_at.isoformat() if log.created_at else None,
        }
        for log in await get_denied_logs_between(session, start, end)
    ]
