import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # PostgreSQL settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "ratelimiter"
    db_password: str = "ratelimiter"
    db_name: str = "ratelimiter"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 300
    db_pool_pre_ping: bool = True
    db_command_timeout: float = 10.0

    # Explicit DATABASE_URL (takes priority over db_* settings)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Build database connection URL.

        Priority:
        1. database_url_override (from DATABASE_URL env var or .env file)
        2. Built from db_* settings
        """
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # Redis settings (bucket state store)
    redis_enabled: bool = True
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 1.0

    # Default rate limit parameters (used when no persisted config matches)
    rate_limit_requests_per_minute: int = 10
    rate_limit_burst_capacity: int | None = None
    rate_limit_window_seconds: int = 60
    rate_limit_algorithm: str = "TOKEN_BUCKET"
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the state store is unavailable
    )
    # Bucket keys expire after this multiple of the full refill window
    rate_limit_ttl_multiplier: float = 2.0

    # Bucket state store behaviour
    store_timeout_seconds: float = 0.5
    store_max_retries: int = 10
    config_lookup_timeout_seconds: float = 0.5
    in_memory_max_keys: int = 10000

    # Usage audit log settings
    audit_enabled: bool = True
    audit_buffer_size: int = 100
    audit_flush_interval: float = 5.0
    audit_max_retries: int = 3

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("rate_limit_requests_per_minute", "rate_limit_window_seconds")
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("rate_limit_burst_capacity")
    @classmethod
    def validate_burst_capacity(cls, v: int | None) -> int | None:
        """Burst capacity is optional but must be positive when set."""
        if v is not None and v < 1:
            raise ValueError("rate_limit_burst_capacity must be at least 1")
        return v

    @field_validator("rate_limit_algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Only the token bucket algorithm is implemented."""
        normalized = v.strip().upper()
        if normalized != "TOKEN_BUCKET":
            raise ValueError(f"Unsupported rate limit algorithm: {v}")
        return normalized

    @field_validator("rate_limit_ttl_multiplier")
    @classmethod
    def validate_ttl_multiplier(cls, v: float) -> float:
        """Keys must outlive a full refill, otherwise expiry would lose tokens."""
        if v < 1.0:
            raise ValueError("rate_limit_ttl_multiplier must be at least 1.0")
        return v

    @field_validator(
        "store_timeout_seconds",
        "config_lookup_timeout_seconds",
        "redis_socket_timeout",
        "audit_flush_interval",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator(
        "db_pool_size",
        "db_max_overflow",
        "store_max_retries",
        "in_memory_max_keys",
        "audit_buffer_size",
    )
    @classmethod
    def validate_size_positive(cls, v: int) -> int:
        """Validate size values are positive."""
        if v < 1:
            raise ValueError("size values must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_file=os.getenv("RATELIMITER_ENV_FILE", ".env"), extra="ignore"
    )


# Global settings instance
settings = Settings()
