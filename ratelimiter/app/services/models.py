"""Data models for token bucket admission control."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from ratelimiter.app.exceptions import InvalidConfig

MILLIS_PER_MINUTE = 60_000


class Algorithm(str, Enum):
    """Supported admission algorithms."""
    TOKEN_BUCKET = "TOKEN_BUCKET"


@dataclass(frozen=True)
class BucketState:
    """Persisted state of a single (principal, resource) bucket.

    Attributes:
        tokens: Tokens currently in the bucket, within [0, capacity]
        last_refill_time_millis: Epoch millis of the last refill
    """
    tokens: float
    last_refill_time_millis: int

    FIELD_TOKENS = "tokens"
    FIELD_LAST_REFILL = "lastRefillTimeMillis"

    def to_mapping(self) -> dict[str, str]:
        """Serialize to the store's hash fields."""
        return {
            self.FIELD_TOKENS: repr(float(self.tokens)),
            self.FIELD_LAST_REFILL: str(int(self.last_refill_time_millis)),
        }

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[Any, Any]]) -> Optional["BucketState"]:
        """Build a fresh state from raw hash fields.

        Returns None for a missing or empty hash. Keys and values may be bytes
        (as returned by redis without decode_responses).
        """
        if not raw:
            return None
        decoded = {
            (k.decode() if isinstance(k, bytes) else k): (
                v.decode() if isinstance(v, bytes) else v
            )
            for k, v in raw.items()
        }
        if cls.FIELD_TOKENS not in decoded or cls.FIELD_LAST_REFILL not in decoded:
            return None
        return cls(
            tokens=float(decoded[cls.FIELD_TOKENS]),
            last_refill_time_millis=int(decoded[cls.FIELD_LAST_REFILL]),
        )


@dataclass(frozen=True)
class RateLimitConfig:
    """Effective rate-limit parameters for a (principal, resource) pair."""
    principal_id: str
    resource: str
    tier: str
    sustained_rate_per_minute: int
    burst_capacity: Optional[int] = None
    algorithm: Algorithm = Algorithm.TOKEN_BUCKET
    enabled: bool = True

    @property
    def capacity(self) -> int:
        """Maximum bucket size: burst capacity if set, else the sustained rate."""
        if self.burst_capacity is not None:
            return self.burst_capacity
        return self.sustained_rate_per_minute

    @property
    def full_refill_millis(self) -> float:
        """Time for an empty bucket to refill to capacity."""
        return self.capacity * MILLIS_PER_MINUTE / self.sustained_rate_per_minute

    def validate(self) -> "RateLimitConfig":
        """Raise InvalidConfig unless rate and capacity are positive."""
        if self.sustained_rate_per_minute is None or self.sustained_rate_per_minute <= 0:
            raise InvalidConfig(
                f"sustained_rate_per_minute must be positive, got {self.sustained_rate_per_minute}"
            )
        if self.burst_capacity is not None and self.burst_capacity <= 0:
            raise InvalidConfig(
                f"burst_capacity must be positive, got {self.burst_capacity}"
            )
        if not isinstance(self.algorithm, Algorithm):
            raise InvalidConfig(f"Unsupported algorithm: {self.algorithm}")
        return self


@dataclass(frozen=True)
class DecisionMetadata:
    algorithm: str
    window_duration_seconds: int

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "windowDuration": self.window_duration_seconds,
        }


@dataclass(frozen=True)
class Decision:
    """Outcome of a single admission check. Never persisted."""
    allowed: bool
    remaining_tokens: int
    reset_time_millis: int
    tier: str = ""
    message: str = ""
    metadata: Optional[DecisionMetadata] = field(default=None)

    def to_dict(self) -> dict:
        """Convert to the API response shape."""
        return {
            "allowed": self.allowed,
            "remainingTokens": self.remaining_tokens,
            "resetTime": self.reset_time_millis,
            "tier": self.tier,
            "message": self.message,
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }
