"""Database package for the rate limiter.

This package provides:
- Database models (RateLimitConfigRecord, RateLimitUsageLog)
- Asynchronous session management
- CRUD operations for configs and usage logs
- FastAPI dependency injection support
"""

from ratelimiter.app.db.base import Base
from ratelimiter.app.db.models import RateLimitConfigRecord, RateLimitUsageLog
from ratelimiter.app.db.async_session import (
    SessionDep,
    close_async_engine,
    get_async_engine,
    get_async_session,
    get_async_session_maker,
    get_db,
    init_async_db,
    verify_connection,
)

__all__ = [
    "Base",
    "RateLimitConfigRecord",
    "RateLimitUsageLog",
    "SessionDep",
    "close_async_engine",
    "get_async_engine",
    "get_async_session",
    "get_async_session_maker",
    "get_db",
    "init_async_db",
    "verify_connection",
]
