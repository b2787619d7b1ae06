"""Rate limiter facade.

Ties config resolution, the bucket store and the token bucket engine
together. Store calls are the only suspension points; each is bounded by a
timeout, and any store failure is turned into a policy decision (fail-open
or fail-closed) instead of an exception.
"""

import asyncio
import math
import time
from typing import Awaitable, Callable, Optional, TypeVar

from ratelimiter.app.core.config import Settings, settings as default_settings
from ratelimiter.app.core.logging import get_log_context, get_logger
from ratelimiter.app.exceptions import StoreTimeout, StoreUnavailable
from ratelimiter.app.services.audit_logger import AuditSink
from ratelimiter.app.services.bucket_store import BucketStateStore
from ratelimiter.app.services.config_resolver import ConfigResolver
from ratelimiter.app.services.models import Decision, DecisionMetadata, RateLimitConfig
from ratelimiter.app.services.token_bucket import advance

logger = get_logger(__name__)

T = TypeVar("T")


def wall_clock_millis() -> int:
    return int(time.time() * 1000)


class RateLimiterService:
    """Admission control for (principal, resource) pairs.

    Redis key format:
    - rate_limit:{principal_id}:{resource} - hash {tokens, lastRefillTimeMillis}
    """

    KEY_PREFIX = "rate_limit"

    def __init__(
        self,
        store: BucketStateStore,
        resolver: Optional[ConfigResolver] = None,
        audit_sink: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = wall_clock_millis,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            store: Bucket state store shared by all instances
            resolver: Config resolver (defaults to settings-only defaults)
            audit_sink: Receiver of decisions, optional
            settings: Settings override, mainly for tests
            clock: Source of epoch milliseconds
        """
        self._settings = settings or default_settings
        self._store = store
        self._resolver = resolver or ConfigResolver(settings=self._settings)
        self._audit_sink = audit_sink
        self._clock = clock

    @property
    def store(self) -> BucketStateStore:
        return self._store

    def make_key(self, principal_id: str, resource: str) -> str:
        """Create the store key for a bucket."""
        return f"{self.KEY_PREFIX}:{principal_id}:{resource}"

    def _ttl_millis(self, config: RateLimitConfig) -> int:
        """Expiry for a bucket: a multiple of the time to refill from empty."""
        return math.ceil(self._settings.rate_limit_ttl_multiplier * config.full_refill_millis)

    async def _bounded(self, call: Awaitable[T], key: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._settings.store_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StoreTimeout(
                f"Bucket store did not answer within {self._settings.store_timeout_seconds}s for {key}"
            ) from e

    async def allow_request(
        self,
        principal_id: str,
        resource: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Decision:
        """Check the bucket and consume one token if the request is admitted.

        Never raises: store failures produce a fail-open or fail-closed
        decision according to settings.rate_limit_fail_closed.
        """
        started = time.perf_counter()
        config = await self._resolver.resolve(principal_id, resource)
        key = self.make_key(principal_id, resource)
        window = self._settings.rate_limit_window_seconds

        def update(state):
            return advance(state, config, self._clock(), consume=True, window_seconds=window)

        try:
            decision = await self._bounded(
                self._store.atomic_update(key, update, self._ttl_millis(config)), key
            )
        except StoreTimeout as e:
            logger.warning(f"Bucket store timeout: {e.message}")
            decision = self._handle_store_failure(config, e.error)
        except StoreUnavailable as e:
            logger.error(f"Bucket store unavailable: {e.message}")
            decision = self._handle_store_failure(config, e.error)
        except Exception as e:
            logger.exception(f"Unexpected rate limit error: {e}")
            decision = self._handle_store_failure(config, "unexpected")

        latency_ms = int((time.perf_counter() - started) * 1000)
        context = get_log_context(
            principal_id=principal_id,
            resource=resource,
            tier=config.tier,
            allowed=decision.allowed,
            remaining_tokens=decision.remaining_tokens,
            duration_ms=latency_ms,
        )
        if decision.allowed:
            logger.debug("Request allowed", extra=context)
        else:
            logger.info("Rate limit exceeded", extra=context)

        self._audit(principal_id, resource, decision, config, latency_ms, ip_address, user_agent)
        return decision

    async def get_status(self, principal_id: str, resource: str) -> Decision:
        """Project the bucket to now without consuming or persisting anything."""
        config = await self._resolver.resolve(principal_id, resource)
        key = self.make_key(principal_id, resource)
        window = self._settings.rate_limit_window_seconds

        def project(state):
            return advance(state, config, self._clock(), consume=False, window_seconds=window)

        try:
            return await self._bounded(self._store.peek(key, project), key)
        except StoreUnavailable as e:
            logger.warning(f"Bucket store unavailable for status read: {e.message}")
            return self._handle_store_failure(config, e.error)
        except Exception as e:
            logger.exception(f"Unexpected rate limit status error: {e}")
            return self._handle_store_failure(config, "unexpected")

    async def get_remaining_tokens(self, principal_id: str, resource: str) -> int:
        """Whole tokens currently available, without consuming one."""
        return (await self.get_status(principal_id, resource)).remaining_tokens

    async def get_reset_time(self, principal_id: str, resource: str) -> int:
        """Epoch millis at which the bucket will be full again."""
        return (await self.get_status(principal_id, resource)).reset_time_millis

    async def reset(self, principal_id: str, resource: str) -> bool:
        """Delete a bucket so the next request sees a full one."""
        key = self.make_key(principal_id, resource)
        try:
            deleted = await self._bounded(self._store.reset(key), key)
        except StoreUnavailable as e:
            logger.error(f"Rate limit reset failed: {e.message}")
            return False
        logger.info(
            "Rate limit reset",
            extra=get_log_context(principal_id=principal_id, resource=resource),
        )
        return deleted

    def _handle_store_failure(self, config: RateLimitConfig, error_type: str) -> Decision:
        """Build the decision used when the bucket store cannot be consulted.

        Args:
            config: Effective config for the request
            error_type: Short error tag for the message and logs

        Returns:
            Decision based on the fail_closed configuration
        """
        now = self._clock()
        metadata = DecisionMetadata(
            algorithm=config.algorithm.value,
            window_duration_seconds=self._settings.rate_limit_window_seconds,
        )

        if self._settings.rate_limit_fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. Request denied."
            )
            return Decision(
                allowed=False,
                remaining_tokens=0,
                reset_time_millis=now + math.ceil(config.full_refill_millis),
                tier=config.tier,
                message=f"Rate limiter unavailable ({error_type}). Request denied.",
                metadata=metadata,
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error_type}. "
            "Request allowed without rate limit check."
        )
        return Decision(
            allowed=True,
            remaining_tokens=config.capacity,
            reset_time_millis=now,
            tier=config.tier,
            message=f"Rate limiter unavailable ({error_type}). Request allowed without rate limit check.",
            metadata=metadata,
        )

    def _audit(
        self,
        principal_id: str,
        resource: str,
        decision: Decision,
        config: RateLimitConfig,
        latency_ms: int,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        if self._audit_sink is None:
            return
        try:
            self._audit_sink.record(
                principal_id,
                resource,
                decision.allowed,
                decision.remaining_tokens,
                config.algorithm.value,
                latency_ms,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except Exception as e:
            logger.warning(f"Usage audit record failed: {e}")


_rate_limiter_service: Optional[RateLimiterService] = None


def get_rate_limiter_service() -> RateLimiterService:
    """Get the global rate limiter service instance.

    Raises:
        RuntimeError: The application has not installed one yet
    """
    if _rate_limiter_service is None:
        raise RuntimeError("Rate limiter service is not initialized")
    return _rate_limiter_service


def set_rate_limiter_service(service: Optional[RateLimiterService]) -> None:
    """Install (or clear, with None) the global rate limiter service."""
    global _rate_limiter_service
    _rate_limiter_service = service
