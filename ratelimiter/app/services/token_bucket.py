"""Token bucket refill/consume computation.

Pure functions only: no I/O and no clock access. The caller supplies the
current time, which keeps every decision deterministic and lets the bucket
store run ``advance`` inside its atomic update.
"""

import math
from typing import Optional, Tuple

from ratelimiter.app.services.models import (
    MILLIS_PER_MINUTE,
    BucketState,
    Decision,
    DecisionMetadata,
    RateLimitConfig,
)

MESSAGE_ALLOWED = "Request allowed"
MESSAGE_DENIED = "Rate limit exceeded. Try again later."


def refill(state: Optional[BucketState], config: RateLimitConfig, now_millis: int) -> BucketState:
    """Return the bucket as of ``now_millis``, topped up at the sustained rate.

    An absent state is a full bucket. Elapsed time is clamped at zero and the
    refill timestamp never moves backwards.
    """
    capacity = config.capacity
    if state is None:
        return BucketState(tokens=float(capacity), last_refill_time_millis=now_millis)

    elapsed = max(0, now_millis - state.last_refill_time_millis)
    # Multiply before dividing so whole windows refill to exact integers
    added = elapsed * config.sustained_rate_per_minute / MILLIS_PER_MINUTE
    tokens = min(float(capacity), max(0.0, state.tokens) + added)
    return BucketState(
        tokens=tokens,
        last_refill_time_millis=max(state.last_refill_time_millis, now_millis),
    )


def reset_time_millis(state: BucketState, config: RateLimitConfig) -> int:
    """Epoch millis at which the bucket would next be full."""
    missing = config.capacity - state.tokens
    if missing <= 0:
        return state.last_refill_time_millis
    return state.last_refill_time_millis + math.ceil(
        missing * MILLIS_PER_MINUTE / config.sustained_rate_per_minute
    )


def advance(
    state: Optional[BucketState],
    config: RateLimitConfig,
    now_millis: int,
    consume: bool,
    window_seconds: int = 60,
) -> Tuple[BucketState, Decision]:
    """Refill the bucket, decide admission and optionally take one token.

    Args:
        state: Previous bucket state, or None for a never-seen key
        config: Effective rate-limit config for the key
        now_millis: Current time in epoch milliseconds
        consume: Whether an admitted request takes a token (False for status reads)
        window_seconds: Window reported in the decision metadata

    Returns:
        Tuple of (new_state, decision)
    """
    current = refill(state, config, now_millis)
    allowed = current.tokens >= 1
    if consume and allowed:
        current = BucketState(
            tokens=current.tokens - 1,
            last_refill_time_millis=current.last_refill_time_millis,
        )

    decision = Decision(
        allowed=allowed,
        remaining_tokens=max(0, math.floor(current.tokens)),
        reset_time_millis=reset_time_millis(current, config),
        tier=config.tier,
        message=MESSAGE_ALLOWED if allowed else MESSAGE_DENIED,
        metadata=DecisionMetadata(
            algorithm=config.algorithm.value,
            window_duration_seconds=window_seconds,
        ),
    )
    return current, decision
