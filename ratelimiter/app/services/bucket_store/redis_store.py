"""Redis-backed bucket state store shared by every service instance.

Each bucket is a Redis hash ``{tokens, lastRefillTimeMillis}``. Updates use
an optimistic transaction: WATCH the key, read it, compute the new state in
Python, then MULTI/EXEC the write together with the expiry. If another
writer touched the key in between, EXEC aborts with WatchError and the whole
read-compute-write is retried against the fresh value. This prevents lost
updates across processes without holding any lock.
"""

from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.exceptions import StoreContention, StoreTimeout, StoreUnavailable
from ratelimiter.app.services.bucket_store.base import BucketStateStore, T, UpdateFn
from ratelimiter.app.services.models import BucketState

logger = get_logger(__name__)


class RedisBucketStore(BucketStateStore):
    """Distributed bucket store using Redis optimistic transactions."""

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        socket_timeout: Optional[float] = None,
    ) -> None:
        """Initialize the Redis bucket store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL (defaults to settings)
            max_retries: Attempts before giving up on a contended key
            socket_timeout: Socket timeout in seconds for a lazily created client
        """
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._max_retries = max_retries or settings.store_max_retries
        self._socket_timeout = socket_timeout or settings.redis_socket_timeout

    def _get_redis(self) -> Any:
        """Get or create Redis client."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
        return self._redis

    async def atomic_update(self, key: str, update_fn: UpdateFn, ttl_millis: int) -> T:
        redis = self._get_redis()
        try:
            async with redis.pipeline(transaction=True) as pipe:
                for attempt in range(1, self._max_retries + 1):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.hgetall(key)
                        new_state, result = update_fn(BucketState.from_mapping(raw))
                        pipe.multi()
                        pipe.hset(key, mapping=new_state.to_mapping())
                        pipe.pexpire(key, max(1, int(ttl_millis)))
                        await pipe.execute()
                        return result
                    except WatchError:
                        logger.debug(
                            f"Concurrent update on {key}, retrying "
                            f"(attempt {attempt}/{self._max_retries})"
                        )
                raise StoreContention(key, self._max_retries)
        except RedisTimeoutError as e:
            raise StoreTimeout(f"Redis timeout updating {key}: {e}") from e
        except RedisConnectionError as e:
            raise StoreUnavailable(f"Redis connection failed updating {key}: {e}") from e
        except RedisError as e:
            raise StoreUnavailable(f"Redis error updating {key}: {e}") from e

    async def peek(self, key: str, update_fn: UpdateFn) -> T:
        redis = self._get_redis()
        try:
            raw = await redis.hgetall(key)
        except RedisTimeoutError as e:
            raise StoreTimeout(f"Redis timeout reading {key}: {e}") from e
        except RedisError as e:
            raise StoreUnavailable(f"Redis error reading {key}: {e}") from e
        _, result = update_fn(BucketState.from_mapping(raw))
        return result

    async def reset(self, key: str) -> bool:
        try:
            deleted = await self._get_redis().delete(key)
        except RedisError as e:
            raise StoreUnavailable(f"Redis error deleting {key}: {e}") from e
        return bool(deleted)

    async def ping(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None
