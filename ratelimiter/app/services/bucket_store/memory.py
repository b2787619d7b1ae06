"""In-process bucket state store.

Suitable for single-instance deployments and tests. Updates for a key are
serialized with a per-key asyncio.Lock, so it is atomic within one event loop
but offers no coordination across processes.
"""

import asyncio
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional

from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.services.bucket_store.base import BucketStateStore, T, UpdateFn
from ratelimiter.app.services.models import BucketState

logger = get_logger(__name__)


@dataclass
class _Entry:
    """Stored bucket with its expiry deadline (epoch millis)."""
    state: BucketState
    expires_at_millis: int


def _wall_clock_millis() -> int:
    return int(time.time() * 1000)


class InMemoryBucketStore(BucketStateStore):
    """Bucket store backed by a bounded OrderedDict.

    Memory optimization:
    - Uses OrderedDict for LRU behavior
    - Evicts the least recently used 20% once max_keys is exceeded
    - Expired entries are dropped on read and by cleanup()
    """

    DEFAULT_MAX_KEYS = 10000

    def __init__(
        self,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], int] = _wall_clock_millis,
    ) -> None:
        self._max_keys = max_keys
        self._clock = clock
        self._data: "OrderedDict[str, _Entry]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}
        # Callers holding or waiting on each lock
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """Hold the per-key lock. The lock is dropped once unused and the key is gone."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                if key not in self._data:
                    self._locks.pop(key, None)

    def _discard_lock(self, key: str) -> None:
        if key not in self._lock_users:
            self._locks.pop(key, None)

    def _read(self, key: str) -> Optional[BucketState]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at_millis <= self._clock():
            del self._data[key]
            self._discard_lock(key)
            return None
        return entry.state

    def _enforce_lru_limit(self) -> None:
        if len(self._data) <= self._max_keys:
            return
        remove_count = max(1, int(self._max_keys * 0.2))
        for _ in range(remove_count):
            key, _ = self._data.popitem(last=False)
            self._discard_lock(key)

    async def atomic_update(self, key: str, update_fn: UpdateFn, ttl_millis: int) -> T:
        async with self._locked(key):
            state = self._read(key)
            # Yield once so that concurrent callers really interleave here
            await asyncio.sleep(0)
            new_state, result = update_fn(state)
            self._data[key] = _Entry(
                state=new_state,
                expires_at_millis=self._clock() + ttl_millis,
            )
            self._data.move_to_end(key)
            self._enforce_lru_limit()
            return result

    async def peek(self, key: str, update_fn: UpdateFn) -> T:
        _, result = update_fn(self._read(key))
        return result

    async def reset(self, key: str) -> bool:
        async with self._locked(key):
            return self._data.pop(key, None) is not None

    async def ping(self) -> bool:
        return True

    async def cleanup(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._data.items() if e.expires_at_millis <= now]
        for key in expired:
            del self._data[key]
            self._discard_lock(key)
        if expired:
            logger.debug(f"Removed {len(expired)} expired buckets")
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)
