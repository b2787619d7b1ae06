"""Effective rate-limit config resolution.

The resolver asks a ConfigProvider for the persisted config of an exact
(principal, resource) pair and falls back to the process-wide default from
settings. "Not found", "lookup failed" and "invalid" all resolve to the
default; resolve() never raises.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from ratelimiter.app.core.config import Settings, settings as default_settings
from ratelimiter.app.core.logging import get_log_context, get_logger
from ratelimiter.app.db.async_session import get_async_session
from ratelimiter.app.db.crud import find_active_config
from ratelimiter.app.db.models import RateLimitConfigRecord
from ratelimiter.app.exceptions import ConfigLookupFailed, InvalidConfig
from ratelimiter.app.services.models import Algorithm, RateLimitConfig

logger = get_logger(__name__)

DEFAULT_TIER = "default"


def parse_algorithm(raw: Optional[str], fallback: Algorithm = Algorithm.TOKEN_BUCKET) -> Algorithm:
    """Map a stored algorithm name to the enum; blank means the fallback."""
    if raw is None or not str(raw).strip():
        return fallback
    try:
        return Algorithm(str(raw).strip().upper())
    except ValueError:
        raise InvalidConfig(f"Unsupported algorithm: {raw}")


def config_from_record(record: RateLimitConfigRecord) -> RateLimitConfig:
    """Convert a persisted row into a validated domain config."""
    return RateLimitConfig(
        principal_id=record.user_id,
        resource=record.resource,
        tier=record.tier or DEFAULT_TIER,
        sustained_rate_per_minute=record.requests_per_minute,
        burst_capacity=record.burst_capacity,
        algorithm=parse_algorithm(record.algorithm),
        enabled=bool(record.enabled),
    ).validate()


class ConfigProvider(ABC):
    """Source of persisted, admin-managed configs."""

    @abstractmethod
    async def find(self, principal_id: str, resource: str) -> Optional[RateLimitConfig]:
        """Return the enabled config for the exact pair, or None.

        Raises:
            ConfigLookupFailed: The backing store could not be queried
            InvalidConfig: The stored record is malformed
        """


class SqlConfigProvider(ConfigProvider):
    """Reads configs from the rate_limit_configs table."""

    def __init__(self, session_factory: Callable = get_async_session) -> None:
        self._session_factory = session_factory

    async def find(self, principal_id: str, resource: str) -> Optional[RateLimitConfig]:
        try:
            async with self._session_factory() as session:
                record = await find_active_config(session, principal_id, resource)
        except Exception as e:
            raise ConfigLookupFailed(f"Config lookup failed: {e}") from e
        if record is None:
            return None
        return config_from_record(record)


class StaticConfigProvider(ConfigProvider):
    """Configs held in memory, keyed by (principal_id, resource)."""

    def __init__(self, configs: Optional[Dict[Tuple[str, str], RateLimitConfig]] = None) -> None:
        self._configs: Dict[Tuple[str, str], RateLimitConfig] = dict(configs or {})

    def put(self, config: RateLimitConfig) -> None:
        self._configs[(config.principal_id, config.resource)] = config

    async def find(self, principal_id: str, resource: str) -> Optional[RateLimitConfig]:
        config = self._configs.get((principal_id, resource))
        if config is None or not config.enabled:
            return None
        return config


class ConfigResolver:
    """Ordered fallback chain: persisted config, then static default."""

    def __init__(
        self,
        provider: Optional[ConfigProvider] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._provider = provider
        self._settings = settings or default_settings

    def default_config(self, principal_id: str, resource: str) -> RateLimitConfig:
        """Synthesize the default config from settings."""
        return RateLimitConfig(
            principal_id=principal_id,
            resource=resource,
            tier=DEFAULT_TIER,
            sustained_rate_per_minute=self._settings.rate_limit_requests_per_minute,
            burst_capacity=self._settings.rate_limit_burst_capacity,
            algorithm=parse_algorithm(self._settings.rate_limit_algorithm),
            enabled=True,
        )

    async def resolve(self, principal_id: str, resource: str) -> RateLimitConfig:
        """Return the effective config for the pair. Never raises."""
        if self._provider is None:
            return self.default_config(principal_id, resource)

        context = get_log_context(principal_id=principal_id, resource=resource)
        try:
            config = await asyncio.wait_for(
                self._provider.find(principal_id, resource),
                timeout=self._settings.config_lookup_timeout_seconds,
            )
            if config is not None:
                return config.validate()
        except InvalidConfig as e:
            logger.warning(f"Ignoring invalid rate limit config: {e.message}", extra=context)
        except asyncio.TimeoutError:
            logger.warning(
                f"Config lookup timed out after "
                f"{self._settings.config_lookup_timeout_seconds}s. Using default config.",
                extra=context,
            )
        except ConfigLookupFailed as e:
            logger.warning(f"{e.message}. Using default config.", extra=context)
        except Exception as e:
            logger.warning(f"Unexpected config lookup error: {e}. Using default config.", extra=context)
        return self.default_config(principal_id, resource)
