"""Bucket state store interface.

A store exposes bucket state only through an atomic read-modify-write
primitive and a read-only projection. There is deliberately no raw get/set:
callers hand the store a pure update function and the store guarantees that,
for a fixed key, concurrent updates are linearized.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple, TypeVar

from ratelimiter.app.services.models import BucketState

T = TypeVar("T")

UpdateFn = Callable[[Optional[BucketState]], Tuple[BucketState, T]]


class BucketStateStore(ABC):
    """Abstract base class for bucket state stores."""

    @abstractmethod
    async def atomic_update(self, key: str, update_fn: UpdateFn, ttl_millis: int) -> T:
        """Apply ``update_fn`` to the current state of ``key`` atomically.

        The new state is persisted and the key's expiry reset to
        ``ttl_millis``. No two concurrent calls for the same key may observe
        the same prior state.

        Args:
            key: Bucket key
            update_fn: Pure function mapping old state (or None) to
                (new_state, result)
            ttl_millis: Expiry to set on the key after a successful write

        Returns:
            The ``result`` produced by ``update_fn``

        Raises:
            StoreUnavailable: The store could not be reached
            StoreTimeout: The store did not answer in time
        """

    @abstractmethod
    async def peek(self, key: str, update_fn: UpdateFn) -> T:
        """Run ``update_fn`` on the current state without persisting anything.

        Must not write, and must not refresh the key's expiry.
        """

    @abstractmethod
    async def reset(self, key: str) -> bool:
        """Delete a bucket. Returns True if a bucket existed."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the store is reachable."""

    async def close(self) -> None:
        """Release connections held by the store."""
