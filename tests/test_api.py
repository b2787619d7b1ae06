"""Tests for the HTTP surface."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ratelimiter.app.api import admin_router, health_router, rate_limit_router
from ratelimiter.app.db.async_session import get_db
from ratelimiter.app.db.base import Base
from ratelimiter.app.db.crud import save_usage_logs_bulk
from ratelimiter.app.main import add_exception_handlers, create_app
from ratelimiter.app.middleware.request_id import RequestIdMiddleware
from ratelimiter.app.services.bucket_store import InMemoryBucketStore, RedisBucketStore
from ratelimiter.app.services.config_resolver import ConfigResolver, SqlConfigProvider
from ratelimiter.app.services.rate_limiter import RateLimiterService, get_rate_limiter_service


@pytest.fixture
def service(clock, test_settings):
    return RateLimiterService(
        store=InMemoryBucketStore(clock=clock),
        resolver=ConfigResolver(settings=test_settings),
        settings=test_settings,
        clock=clock,
    )


@pytest.fixture
def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ratelimiter_api_test.db'}")

    async def init_db() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(init_db())
    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    asyncio.run(engine.dispose())


def build_app(service, session_maker) -> FastAPI:
    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.include_router(rate_limit_router)
    app.include_router(admin_router)
    app.include_router(health_router)
    add_exception_handlers(app)
    app.dependency_overrides[get_rate_limiter_service] = lambda: service
    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(service, session_maker):
    with TestClient(build_app(service, session_maker)) as test_client:
        yield test_client


def new_config(**overrides):
    body = {
        "userId": "user-1",
        "resource": "api/users",
        "tier": "premium",
        "requestsPerMinute": 100,
        "burstCapacity": 150,
    }
    body.update(overrides)
    return body


class TestCheckLimit:

    def test_allowed_request(self, client):
        resp = client.post("/api/check-limit", json={"userId": "user-1", "resource": "api/users"})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["allowed"] is True
        assert data["remainingTokens"] == 9
        assert data["tier"] == "default"
        assert data["message"] == "Request allowed"
        assert data["metadata"] == {"algorithm": "TOKEN_BUCKET", "windowDuration": 60}
        assert isinstance(data["resetTime"], int)

    def test_denied_request_returns_429(self, client):
        for _ in range(10):
            assert client.post("/api/check-limit", json={"userId": "u", "resource": "r"}).status_code == 200

        resp = client.post("/api/check-limit", json={"userId": "u", "resource": "r"})
        assert resp.status_code == 429
        assert resp.json()["allowed"] is False
        assert resp.json()["remainingTokens"] == 0

    def test_missing_user_is_anonymous(self, client):
        client.post("/api/check-limit", json={"resource": "api/users"})
        resp = client.get("/api/limit-status", params={"userId": "anonymous", "resource": "api/users"})
        assert resp.json()["remainingTokens"] == 9

    @pytest.mark.parametrize("body", [{}, {"resource": ""}, {"resource": "   "}])
    def test_resource_is_required(self, client, body):
        assert client.post("/api/check-limit", json=body).status_code == 422

    def test_request_id_is_echoed(self, client):
        resp = client.post(
            "/api/check-limit",
            json={"resource": "api/users"},
            headers={"X-Request-ID": "req-42"},
        )
        assert resp.headers["X-Request-ID"] == "req-42"


class TestLimitStatus:

    def test_status_does_not_consume(self, client):
        for _ in range(2):
            resp = client.get("/api/limit-status", params={"userId": "user-1", "resource": "api/users"})
            assert resp.status_code == 200
            assert resp.json()["remainingTokens"] == 10
            assert resp.json()["message"] == "Quota available"
            assert resp.json()["allowed"] is True

    def test_exhausted_quota(self, client):
        for _ in range(10):
            client.post("/api/check-limit", json={"userId": "user-1", "resource": "api/users"})
        data = client.get("/api/limit-status", params={"userId": "user-1", "resource": "api/users"}).json()
        assert data["allowed"] is False
        assert data["remainingTokens"] == 0
        assert data["message"] == "Quota exhausted"

    def test_parameters_are_required(self, client):
        assert client.get("/api/limit-status", params={"resource": "api/users"}).status_code == 422


class TestAdminLimits:

    def test_create_and_get(self, client):
        resp = client.post("/api/admin/limits", json=new_config(algorithm="token_bucket"))
        assert resp.status_code == 201, resp.text
        created = resp.json()
        assert created["userId"] == "user-1"
        assert created["requestsPerMinute"] == 100
        assert created["burstCapacity"] == 150
        assert created["algorithm"] == "TOKEN_BUCKET"
        assert created["enabled"] is True
        assert created["createdAt"] is not None

        fetched = client.get(f"/api/admin/limits/{created['id']}").json()
        assert fetched["id"] == created["id"]
        assert fetched["tier"] == "premium"
        assert fetched["burstCapacity"] == 150

    def test_duplicate_enabled_pair_conflicts(self, client):
        assert client.post("/api/admin/limits", json=new_config()).status_code == 201
        resp = client.post("/api/admin/limits", json=new_config(tier="free"))
        assert resp.status_code == 409
        assert resp.json()["error"] == "config_conflict"
        assert resp.json()["status"] == 409

    def test_unknown_id_is_404(self, client):
        resp = client.get("/api/admin/limits/999")
        assert resp.status_code == 404
        assert resp.json()["error"] == "config_not_found"
        assert client.put("/api/admin/limits/999", json=new_config()).status_code == 404
        assert client.delete("/api/admin/limits/999").status_code == 404

    @pytest.mark.parametrize(
        "overrides",
        [
            {"userId": " "},
            {"resource": ""},
            {"tier": ""},
            {"requestsPerMinute": 0},
            {"burstCapacity": 0},
            {"algorithm": "LEAKY_BUCKET"},
        ],
    )
    def test_validation(self, client, overrides):
        assert client.post("/api/admin/limits", json=new_config(**overrides)).status_code == 422

    def test_update(self, client):
        created = client.post("/api/admin/limits", json=new_config()).json()
        resp = client.put(
            f"/api/admin/limits/{created['id']}",
            json=new_config(tier="enterprise", requestsPerMinute=1000, burstCapacity=None),
        )
        assert resp.status_code == 200, resp.text
        updated = resp.json()
        assert updated["tier"] == "enterprise"
        assert updated["requestsPerMinute"] == 1000
        assert updated["burstCapacity"] is None
        assert updated["enabled"] is True

    def test_update_onto_existing_pair_conflicts(self, client):
        client.post("/api/admin/limits", json=new_config(resource="api/a"))
        other = client.post("/api/admin/limits", json=new_config(resource="api/b")).json()
        resp = client.put(f"/api/admin/limits/{other['id']}", json=new_config(resource="api/a"))
        assert resp.status_code == 409

    def test_soft_delete(self, client):
        created = client.post("/api/admin/limits", json=new_config()).json()
        assert client.delete(f"/api/admin/limits/{created['id']}").status_code == 204

        # Still listed, but disabled, and gone from the user's active list
        all_configs = client.get("/api/admin/limits").json()
        assert [c["enabled"] for c in all_configs] == [False]
        assert client.get("/api/admin/limits/user/user-1").json() == []

        # The pair can be configured again
        assert client.post("/api/admin/limits", json=new_config()).status_code == 201

    def test_lists_by_user_and_tier(self, client):
        client.post("/api/admin/limits", json=new_config(resource="api/a", tier="free"))
        client.post("/api/admin/limits", json=new_config(resource="api/b", tier="premium"))
        client.post("/api/admin/limits", json=new_config(userId="user-2", tier="premium"))

        assert len(client.get("/api/admin/limits/user/user-1").json()) == 2
        premium = client.get("/api/admin/limits/tier/premium").json()
        assert {c["userId"] for c in premium} == {"user-1", "user-2"}
        assert client.get("/api/admin/limits/stats/tiers").json() == {"free": 1, "premium": 2}


class TestAdminBuckets:

    def test_reset_bucket(self, client):
        for _ in range(10):
            client.post("/api/check-limit", json={"userId": "user-1", "resource": "api/users"})
        assert client.post(
            "/api/check-limit", json={"userId": "user-1", "resource": "api/users"}
        ).status_code == 429

        assert client.delete("/api/admin/buckets/user-1/api/users").status_code == 204
        assert client.post(
            "/api/check-limit", json={"userId": "user-1", "resource": "api/users"}
        ).status_code == 200

    def test_reset_unknown_bucket(self, client):
        assert client.delete("/api/admin/buckets/nobody/api/users").status_code == 404


class TestAdminUsage:

    def test_summary_and_denied(self, client, session_maker):
        now = datetime.now(timezone.utc)
        rows = [
            dict(user_id=user, resource="api/users", allowed=allowed, remaining_tokens=0,
                 algorithm="TOKEN_BUCKET", response_time_ms=1, created_at=now)
            for user, allowed in [("heavy", True), ("heavy", False), ("heavy", False), ("light", True)]
        ]

        async def seed() -> None:
            async with session_maker() as session:
                await save_usage_logs_bulk(session, rows)

        client.portal.call(seed)

        summary = client.get("/api/admin/usage/summary", params={"hours": 1}).json()
        assert summary["denied"] == 2
        assert summary["total"] == 4
        assert summary["blockRate"] == 0.5
        assert summary["topUsers"][0] == {"userId": "heavy", "requests": 3}

        denied = client.get("/api/admin/usage/denied", params={"hours": 1}).json()
        assert len(denied) == 2
        assert {d["userId"] for d in denied} == {"heavy"}


class TestHealth:

    def test_basic_health_checks(self, client):
        assert client.get("/api/health").json()["status"] == "UP"
        assert client.get("/api/health/ready").json() == {"status": "READY"}
        assert client.get("/api/health/live").json() == {"status": "ALIVE"}

    def test_detailed_all_up(self, client):
        with patch("ratelimiter.app.api.health.verify_connection", AsyncMock(return_value=True)):
            data = client.get("/api/health/detailed").json()
        assert data["overall_status"] == "UP"
        assert data["dependencies"]["database"] == "UP"
        assert data["dependencies"]["bucket_store"] == "UP"
        assert data["dependencies"]["store_type"] == "memory"
        assert "redis" not in data["dependencies"]

    def test_detailed_degraded(self, client):
        with patch("ratelimiter.app.api.health.verify_connection", AsyncMock(return_value=False)):
            data = client.get("/api/health/detailed").json()
        assert data["overall_status"] == "DEGRADED"
        assert data["dependencies"]["database"] == "DOWN"

    def test_detailed_redis_store(self, client, clock, test_settings, fake_redis):
        redis_service = RateLimiterService(
            store=RedisBucketStore(redis_client=fake_redis),
            settings=test_settings,
            clock=clock,
        )
        client.app.dependency_overrides[get_rate_limiter_service] = lambda: redis_service
        with patch("ratelimiter.app.api.health.verify_connection", AsyncMock(return_value=True)):
            data = client.get("/api/health/detailed").json()
        assert data["dependencies"]["store_type"] == "redis"
        assert data["dependencies"]["redis"] == "UP"
        assert data["overall_status"] == "UP"


class TestPersistedConfigEnforcement:

    def test_created_config_is_enforced(self, clock, test_settings, session_maker):
        test_settings.config_lookup_timeout_seconds = 5
        service = RateLimiterService(
            store=InMemoryBucketStore(clock=clock),
            resolver=ConfigResolver(SqlConfigProvider(session_maker), test_settings),
            settings=test_settings,
            clock=clock,
        )
        with TestClient(build_app(service, session_maker)) as client:
            created = client.post(
                "/api/admin/limits",
                json=new_config(userId="vip", tier="enterprise", requestsPerMinute=60, burstCapacity=3),
            )
            assert created.status_code == 201, created.text

            responses = [
                client.post("/api/check-limit", json={"userId": "vip", "resource": "api/users"})
                for _ in range(4)
            ]
            assert [r.status_code for r in responses] == [200, 200, 200, 429]
            assert responses[0].json()["tier"] == "enterprise"
            assert responses[0].json()["remainingTokens"] == 2

            # Users without a config still get the default
            other = client.post("/api/check-limit", json={"userId": "user-2", "resource": "api/users"})
            assert other.json()["tier"] == "default"
            assert other.json()["remainingTokens"] == 9

            # Once disabled, the default applies to a fresh bucket
            assert client.delete(f"/api/admin/limits/{created.json()['id']}").status_code == 204
            assert client.delete("/api/admin/buckets/vip/api/users").status_code == 204
            after = client.post("/api/check-limit", json={"userId": "vip", "resource": "api/users"})
            assert after.json()["tier"] == "default"
            assert after.json()["remainingTokens"] == 9


def test_create_app_registers_routes():
    paths = set(create_app().openapi()["paths"])
    assert {
        "/api/check-limit",
        "/api/limit-status",
        "/api/admin/limits",
        "/api/admin/limits/{config_id}",
        "/api/health/detailed",
    } <= paths
