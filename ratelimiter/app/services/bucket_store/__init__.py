"""Bucket state stores.

Provides the atomic store interface plus a Redis implementation for
multi-instance deployments and an in-process one for single instances.
"""

from typing import Optional

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.services.bucket_store.base import BucketStateStore, UpdateFn
from ratelimiter.app.services.bucket_store.memory import InMemoryBucketStore
from ratelimiter.app.services.bucket_store.redis_store import RedisBucketStore

logger = get_logger(__name__)

__all__ = [
    "BucketStateStore",
    "UpdateFn",
    "InMemoryBucketStore",
    "RedisBucketStore",
    "create_bucket_store",
]


def create_bucket_store(use_redis: Optional[bool] = None) -> BucketStateStore:
    """Select the bucket store from settings.

    Args:
        use_redis: Force Redis usage (None = auto-detect from settings)
    """
    should_use_redis = use_redis if use_redis is not None else settings.redis_enabled
    if should_use_redis:
        logger.info("Using Redis bucket state store")
        return RedisBucketStore()
    logger.info("Using in-memory bucket state store (single instance only)")
    return InMemoryBucketStore(max_keys=settings.in_memory_max_keys)
