"""Rate limit config CRUD operations."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ratelimiter.app.db.models import RateLimitConfigRecord
from ratelimiter.app.exceptions import ConfigConflictError, ConfigNotFoundError

# Columns an admin may set through create/update
EDITABLE_FIELDS = (
    "user_id",
    "resource",
    "tier",
    "requests_per_minute",
    "burst_capacity",
    "algorithm",
    "enabled",
)


async def find_active_config(
    session: AsyncSession, user_id: str, resource: str
) -> Optional[RateLimitConfigRecord]:
    """Find the enabled config for an exact (user, resource) pair."""
    result = await session.execute(
        select(RateLimitConfigRecord).where(
            RateLimitConfigRecord.user_id == user_id,
            RateLimitConfigRecord.resource == resource,
            RateLimitConfigRecord.enabled.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def get_config_by_id(
    session: AsyncSession, config_id: int
) -> Optional[RateLimitConfigRecord]:
    return await session.get(RateLimitConfigRecord, config_id)


async def list_configs(session: AsyncSession) -> List[RateLimitConfigRecord]:
    result = await session.execute(
        select(RateLimitConfigRecord).order_by(RateLimitConfigRecord.id)
    )
    return list(result.scalars().all())


async def list_active_configs_by_user(
    session: AsyncSession, user_id: str
) -> List[RateLimitConfigRecord]:
    """All enabled configs for a user, newest first."""
    result = await session.execute(
        select(RateLimitConfigRecord)
        .where(
            RateLimitConfigRecord.user_id == user_id,
            RateLimitConfigRecord.enabled.is_(True),
        )
        .order_by(RateLimitConfigRecord.created_at.desc(), RateLimitConfigRecord.id.desc())
    )
    return list(result.scalars().all())


async def list_active_configs_by_tier(
    session: AsyncSession, tier: str
) -> List[RateLimitConfigRecord]:
    result = await session.execute(
        select(RateLimitConfigRecord).where(
            RateLimitConfigRecord.tier == tier,
            RateLimitConfigRecord.enabled.is_(True),
        )
    )
    return list(result.scalars().all())


async def count_active_by_tier(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(RateLimitConfigRecord.tier, func.count(RateLimitConfigRecord.id))
        .where(RateLimitConfigRecord.enabled.is_(True))
        .group_by(RateLimitConfigRecord.tier)
    )
    return {tier: count for tier, count in result.all()}


async def create_config(
    session: AsyncSession,
    user_id: str,
    resource: str,
    tier: str,
    requests_per_minute: int,
    burst_capacity: Optional[int] = None,
    algorithm: Optional[str] = None,
    enabled: bool = True,
    created_by: Optional[str] = None,
    auto_commit: bool = True,
) -> RateLimitConfigRecord:
    """Create a config, or revive the soft-deleted row for the same pair.

    (user_id, resource) is unique, so a previously disabled row is updated in
    place instead of inserting a duplicate.

    Raises:
        ConfigConflictError: An enabled config already exists for the pair
    """
    result = await session.execute(
        select(RateLimitConfigRecord).where(
            RateLimitConfigRecord.user_id == user_id,
            RateLimitConfigRecord.resource == resource,
        )
    )
    record = result.scalar_one_or_none()
    if record is not None and record.enabled:
        raise ConfigConflictError(user_id, resource)

    if record is None:
        record = RateLimitConfigRecord(user_id=user_id, resource=resource)
        session.add(record)
    else:
        record.updated_at = datetime.now(timezone.utc)
    record.tier = tier
    record.requests_per_minute = requests_per_minute
    record.burst_capacity = burst_capacity
    record.algorithm = algorithm
    record.enabled = enabled
    record.created_by = created_by
    record.updated_by = created_by

    await session.flush()
    if auto_commit:
        await session.commit()
    return record


async def update_config(
    session: AsyncSession,
    config_id: int,
    updated_by: Optional[str] = None,
    auto_commit: bool = True,
    **fields,
) -> RateLimitConfigRecord:
    """Update editable fields of a config.

    Raises:
        ConfigNotFoundError: No config with this id
    """
    record = await get_config_by_id(session, config_id)
    if record is None:
        raise ConfigNotFoundError(config_id)

    for name, value in fields.items():
        if name in EDITABLE_FIELDS:
            setattr(record, name, value)
    record.updated_by = updated_by
    record.updated_at = datetime.now(timezone.utc)

    await session.flush()
    if auto_commit:
        await session.commit()
    return record


async def disable_config(
    session: AsyncSession,
    config_id: int,
    updated_by: Optional[str] = None,
    auto_commit: bool = True,
) -> RateLimitConfigRecord:
    """Soft delete: mark the config disabled.

    Raises:
        ConfigNotFoundError: No config with this id
    """
    return await update_config(
        session, config_id, updated_by=updated_by, auto_commit=auto_commit, enabled=False
    )
