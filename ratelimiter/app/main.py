from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ratelimiter.app.api import admin_router, health_router, rate_limit_router
from ratelimiter.app.core.config import settings
from ratelimiter.app.core.logging import get_logger, setup_logging
from ratelimiter.app.db.async_session import close_async_engine, init_async_db, verify_connection
from ratelimiter.app.exceptions import RateLimiterError
from ratelimiter.app.middleware.request_id import RequestIdMiddleware, get_request_id
from ratelimiter.app.services.audit_logger import NullAuditSink, get_usage_logger
from ratelimiter.app.services.bucket_store import create_bucket_store
from ratelimiter.app.services.config_resolver import ConfigResolver, SqlConfigProvider
from ratelimiter.app.services.rate_limiter import RateLimiterService, set_rate_limiter_service

logger = get_logger(__name__)


def add_exception_handlers(app: FastAPI) -> None:
    """Install the JSON error handlers on an application."""

    @app.exception_handler(RateLimiterError)
    async def rate_limiter_error_handler(request: Request, exc: RateLimiterError) -> JSONResponse:
        """Render domain errors with their own HTTP status."""
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled exceptions; never return a traceback to the client."""
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            }
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                }
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            }
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the shared store, resolver and audit sink; tear them down on exit."""
        if not await verify_connection():
            logger.error("Database connection failed!")
            raise RuntimeError("Cannot connect to database")
        await init_async_db()

        store = create_bucket_store()
        audit_sink = get_usage_logger() if settings.audit_enabled else NullAuditSink()
        service = RateLimiterService(
            store=store,
            resolver=ConfigResolver(provider=SqlConfigProvider()),
            audit_sink=audit_sink,
        )
        set_rate_limiter_service(service)

        logger.info(
            "Application startup complete",
            extra={
                "store": store.__class__.__name__,
                "audit_enabled": settings.audit_enabled,
                "fail_closed": settings.rate_limit_fail_closed,
            }
        )

        yield

        # Shutdown: flush usage logs before the engine goes away
        if settings.audit_enabled:
            await get_usage_logger().shutdown()
        await store.close()
        set_rate_limiter_service(None)
        await close_async_engine()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Rate Limiter",
        description="Distributed token bucket rate limiting service",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(RequestIdMiddleware)

    app.include_router(rate_limit_router)
    app.include_router(admin_router)
    app.include_router(health_router)

    add_exception_handlers(app)

    return app


# Create the application instance
app = create_app()
