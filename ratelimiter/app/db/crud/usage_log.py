"""Usage log CRUD operations."""
from __future__ import annotations

from datetime import datetime
from typing import List, Sequence

from sqlalchemy import case, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from ratelimiter.app.db.models import RateLimitUsageLog


async def save_usage_logs_bulk(
    session: AsyncSession,
    rows: Sequence[dict],
    auto_commit: bool = True,
) -> int:
    """Insert many usage log rows in one statement.

    Args:
        session: Database session
        rows: Dicts keyed by RateLimitUsageLog column names
        auto_commit: Whether to commit the transaction

    Returns:
        Number of rows written
    """
    if not rows:
        return 0
    await session.execute(insert(RateLimitUsageLog), list(rows))
    if auto_commit:
        await session.commit()
    return len(rows)


async def get_denied_logs_between(
    session: AsyncSession, start: datetime, end: datetime
) -> List[RateLimitUsageLog]:
    result = await session.execute(
        select(RateLimitUsageLog)
        .where(
            RateLimitUsageLog.allowed.is_(False),
            RateLimitUsageLog.created_at.between(start, end),
        )
        .order_by(RateLimitUsageLog.created_at)
    )
    return list(result.scalars().all())


async def get_top_users_by_request_count(
    session: AsyncSession, start: datetime, end: datetime, limit: int = 10
) -> List[tuple[str, int]]:
    """Users with the most checks in the window, busiest first."""
    count = func.count(RateLimitUsageLog.id)
    result = await session.execute(
        select(RateLimitUsageLog.user_id, count)
        .where(RateLimitUsageLog.created_at.between(start, end))
        .group_by(RateLimitUsageLog.user_id)
        .order_by(count.desc())
        .limit(limit)
    )
    return [(user_id, n) for user_id, n in result.all()]


async def calculate_block_rate(
    session: AsyncSession, start: datetime, end: datetime
) -> dict:
    """Share of checks in the window that were denied."""
    result = await session.execute(
        select(
            func.count(case((RateLimitUsageLog.allowed.is_(False), 1))),
            func.count(RateLimitUsageLog.id),
        ).where(RateLimitUsageLog.created_at.between(start, end))
    )
    denied, total = result.one()
    return {
        "denied": denied,
        "total": total,
        "block_rate": (denied / total) if total else 0.0,
    }
