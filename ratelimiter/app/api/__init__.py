"""API endpoints package for the rate limiter."""

from ratelimiter.app.api.admin.router import router as admin_router
from ratelimiter.app.api.health import router as health_router
from ratelimiter.app.api.rate_limit import router as rate_limit_router

__all__ = [
    "admin_router",
    "health_router",
    "rate_limit_router",
]
