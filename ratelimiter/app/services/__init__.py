"""Services package for the rate limiter.

This package provides:
- Token bucket engine (pure refill/consume computation)
- Bucket state stores (Redis optimistic transactions, in-memory)
- Config resolution with default fallback
- Async usage audit logging
- The RateLimiterService facade
"""

from ratelimiter.app.services.models import (
    Algorithm,
    BucketState,
    Decision,
    DecisionMetadata,
    RateLimitConfig,
)
from ratelimiter.app.services.token_bucket import advance, refill, reset_time_millis
from ratelimiter.app.services.bucket_store import (
    BucketStateStore,
    InMemoryBucketStore,
    RedisBucketStore,
    create_bucket_store,
)
from ratelimiter.app.services.config_resolver import (
    DEFAULT_TIER,
    ConfigProvider,
    ConfigResolver,
    SqlConfigProvider,
    StaticConfigProvider,
)
from ratelimiter.app.services.audit_logger import (
    AsyncUsageLogger,
    AuditSink,
    NullAuditSink,
    UsageLogData,
    get_usage_logger,
    reset_usage_logger,
)
from ratelimiter.app.services.rate_limiter import (
    RateLimiterService,
    get_rate_limiter_service,
    set_rate_limiter_service,
)

__all__ = [
    "Algorithm",
    "BucketState",
    "Decision",
    "DecisionMetadata",
    "RateLimitConfig",
    "advance",
    "refill",
    "reset_time_millis",
    "BucketStateStore",
    "InMemoryBucketStore",
    "RedisBucketStore",
    "create_bucket_store",
    "DEFAULT_TIER",
    "ConfigProvider",
    "ConfigResolver",
    "SqlConfigProvider",
    "StaticConfigProvider",
    "AsyncUsageLogger",
    "AuditSink",
    "NullAuditSink",
    "UsageLogData",
    "get_usage_logger",
    "reset_usage_logger",
    "RateLimiterService",
    "get_rate_limiter_service",
    "set_rate_limiter_service",
]
