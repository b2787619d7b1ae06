"""Custom exceptions for the rate limiter application."""


class RateLimiterError(Exception):
    """Base class for rate limiter exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error: str = "rate_limiter_error"

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        return {
            "error": self.error,
            "message": self.message,
            "status": self.status_code,
        }


class ConfigLookupFailed(RateLimiterError):
    """Raised when the config provider cannot be queried.

    Recovered by the resolver, which substitutes the default config.
    """
    error = "config_lookup_failed"


class InvalidConfig(RateLimiterError):
    """Raised when a config has non-positive capacity or rate.

    Maps to HTTP 400 Bad Request when it reaches the admin API.
    """
    status_code = 400
    error = "invalid_config"


class StoreUnavailable(RateLimiterError):
    """Raised when the bucket state store cannot be reached.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error = "store_unavailable"


class StoreTimeout(StoreUnavailable):
    """Raised when a bucket state store call exceeds its deadline."""
    error = "store_timeout"


class StoreContention(StoreUnavailable):
    """Raised when an optimistic transaction keeps losing to other writers."""
    error = "store_contention"

    def __init__(self, key: str, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(f"Gave up updating {key} after {attempts} conflicting attempts")


class ConfigNotFoundError(RateLimiterError):
    """Raised when an admin operation targets an unknown config id.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404
    error = "config_not_found"

    def __init__(self, config_id: int):
        self.config_id = config_id
        super().__init__(f"Config not found with id: {config_id}")


class ConfigConflictError(RateLimiterError):
    """Raised when an enabled config already exists for a (user, resource) pair.

    Maps to HTTP 409 Conflict.
    """
    status_code = 409
    error = "config_conflict"

    def __init__(self, user_id: str, resource: str):
        self.user_id = user_id
        self.resource = resource
        super().__init__(
            f"Config already exists for user {user_id} and resource {resource}"
        )
