from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.exc import IntegrityError

from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.db.async_session import SessionDep
from ratelimiter.app.db.crud import (
    count_active_by_tier,
    create_config,
    disable_config,
    get_config_by_id,
    list_active_configs_by_tier,
    list_active_configs_by_user,
    list_configs,
    update_config,
)
from ratelimiter.app.db.models import RateLimitConfigRecord
from ratelimiter.app.exceptions import ConfigConflictError, ConfigNotFoundError
from ratelimiter.app.services.models import Algorithm

logger = get_logger(__name__)
router = APIRouter()


class RateLimitConfigDTO(BaseModel):
    """Admin view of a rate limit config; camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[int] = None
    user_id: str = Field(alias="userId")
    resource: str
    tier: str
    requests_per_minute: int = Field(alias="requestsPerMinute", ge=1)
    burst_capacity: Optional[int] = Field(default=None, alias="burstCapacity", ge=1)
    algorithm: Optional[str] = None
    enabled: Optional[bool] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @field_validator("user_id", "resource", "tier")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        normalized = v.strip().upper()
        if normalized not in {a.value for a in Algorithm}:
            raise ValueError(f"Unsupported algorithm: {v}")
        return normalized


def _serialize_config(record: RateLimitConfigRecord) -> dict:
    """Serialize an ORM row to the camelCase response shape."""
    return RateLimitConfigDTO(
        id=record.id,
        user_id=record.user_id,
        resource=record.resource,
        tier=record.tier,
        requests_per_minute=record.requests_per_minute,
        burst_capacity=record.burst_capacity,
        algorithm=record.algorithm,
        enabled=record.enabled,
        created_at=record.created_at,
        updated_at=record.updated_at,
    ).model_dump(mode="json", by_alias=True)


@router.get("")
async def list_all_configs(session: SessionDep) -> list[dict]:
    """List all rate limit configs, enabled or not."""
    logger.info("Fetching all rate limit configurations")
    return [_serialize_config(c) for c in await list_configs(session)]


@router.get("/stats/tiers")
async def tier_stats(session: SessionDep) -> dict[str, int]:
    """Number of enabled configs per tier."""
    return await count_active_by_tier(session)


@router.get("/tier/{tier}")
async def list_configs_for_tier(tier: str, session: SessionDep) -> list[dict]:
    """Enabled configs of one tier."""
    return [_serialize_config(c) for c in await list_active_configs_by_tier(session, tier)]


@router.get("/user/{user_id}")
async def list_configs_for_user(user_id: str, session: SessionDep) -> list[dict]:
    """Enabled configs of one user, newest first."""
    logger.info(f"Fetching configs for userId={user_id}")
    return [_serialize_config(c) for c in await list_active_configs_by_user(session, user_id)]


@router.get("/{config_id}")
async def get_config(config_id: int, session: SessionDep) -> dict:
    record = await get_config_by_id(session, config_id)
    if record is None:
        raise ConfigNotFoundError(config_id)
    return _serialize_config(record)


@router.post("", status_code=201)
async def create_new_config(data: RateLimitConfigDTO, session: SessionDep) -> dict:
    """Create a config. 409 if an enabled one exists for the same pair."""
    logger.info(f"Creating config for userId={data.user_id}, resource={data.resource}")
    record = await create_config(
        session,
        user_id=data.user_id,
        resource=data.resource,
        tier=data.tier,
        requests_per_minute=data.requests_per_minute,
        burst_capacity=data.burst_capacity,
        algorithm=data.algorithm,
        enabled=True if data.enabled is None else data.enabled,
    )
    return _serialize_config(record)


@router.put("/{config_id}")
async def update_existing_config(
    config_id: int, data: RateLimitConfigDTO, session: SessionDep
) -> dict:
    """Replace the editable fields of a config."""
    logger.info(f"Updating config id={config_id}")
    fields = {
        "user_id": data.user_id,
        "resource": data.resource,
        "tier": data.tier,
        "requests_per_minute": data.requests_per_minute,
        "burst_capacity": data.burst_capacity,
        "algorithm": data.algorithm,
    }
    if data.enabled is not None:
        fields["enabled"] = data.enabled
    try:
        record = await update_config(session, config_id, **fields)
    except IntegrityError:
        # Moving the row onto another row's (user, resource) pair
        raise ConfigConflictError(data.user_id, data.resource)
    logger.info(f"Updated config id={config_id}")
    return _serialize_config(record)


@router.delete("/{config_id}", status_code=204)
async def delete_config(config_id: int, session: SessionDep) -> Response:
    """Soft delete: the row stays, disabled."""
    logger.info(f"Deleting config id={config_id}")
    await disable_config(session, config_id)
    logger.info(f"Disabled config id={config_id}")
    return Response(status_code=204)
