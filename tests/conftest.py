"""Shared fixtures: fake Redis with WATCH semantics, a manual clock, SQLite sessions."""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from redis.exceptions import WatchError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ratelimiter.app.core.config import Settings
from ratelimiter.app.db.base import Base
from ratelimiter.app.services.bucket_store import BucketStateStore


def sqlite_url(path) -> str:
    # SQLAlchemy expects 4 slashes for absolute paths
    return f"sqlite+aiosqlite:////{str(path).lstrip('/')}"


class ManualClock:
    """Epoch-millis clock that only moves when told to."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


class FakePipeline:
    """Just enough of redis.asyncio.client.Pipeline for WATCH/MULTI/EXEC."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.watched: dict = {}
        self.commands: list = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.reset()

    async def watch(self, *keys):
        for key in keys:
            self.watched[key] = self.redis.versions[key]

    async def hgetall(self, key):
        # Yield so concurrent transactions interleave between read and write
        await asyncio.sleep(0)
        return await self.redis.hgetall(key)

    def multi(self):
        pass

    def hset(self, key, mapping):
        self.commands.append(("hset", key, mapping))
        return self

    def pexpire(self, key, millis):
        self.commands.append(("pexpire", key, millis))
        return self

    async def execute(self):
        try:
            for key, version in self.watched.items():
                if self.redis.versions[key] != version:
                    self.redis.conflicts += 1
                    raise WatchError("Watched variable changed.")
            results = []
            for name, key, arg in self.commands:
                if name == "hset":
                    self.redis.hashes.setdefault(key, {}).update(arg)
                    self.redis.versions[key] += 1
                    results.append(len(arg))
                else:
                    self.redis.ttls[key] = arg
                    results.append(True)
            self.redis.writes += 1
            return results
        finally:
            self.reset()

    def reset(self):
        self.watched = {}
        self.commands = []


class FakeRedis:
    """In-process Redis double with per-key versions for optimistic locking."""

    def __init__(self):
        self.hashes: dict = {}
        self.versions = defaultdict(int)
        self.ttls: dict = {}
        self.conflicts = 0
        self.writes = 0
        self.closed = False

    def pipeline(self, transaction: bool = True):
        return FakePipeline(self)

    async def hgetall(self, key):
        return {k.encode(): str(v).encode() for k, v in self.hashes.get(key, {}).items()}

    async def delete(self, key):
        self.versions[key] += 1
        self.ttls.pop(key, None)
        return 1 if self.hashes.pop(key, None) is not None else 0

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


class NaiveBucketStore(BucketStateStore):
    """Plain get-then-put with no coordination. Loses updates under concurrency."""

    def __init__(self):
        self.data: dict = {}

    async def atomic_update(self, key, update_fn, ttl_millis):
        state = self.data.get(key)
        await asyncio.sleep(0)
        new_state, result = update_fn(state)
        self.data[key] = new_state
        return result

    async def peek(self, key, update_fn):
        return update_fn(self.data.get(key))[1]

    async def reset(self, key):
        return self.data.pop(key, None) is not None

    async def ping(self):
        return True


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def naive_store():
    return NaiveBucketStore()


@pytest.fixture
def test_settings():
    """Settings isolated from the environment's .env file."""
    return Settings(
        _env_file=None,
        redis_enabled=False,
        rate_limit_requests_per_minute=10,
        rate_limit_burst_capacity=None,
        rate_limit_fail_closed=False,
        store_timeout_seconds=0.5,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Async session factory bound to a fresh SQLite file."""
    engine = create_async_engine(sqlite_url(tmp_path / "ratelimiter_test.db"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    @asynccontextmanager
    async def factory():
        async with maker() as session:
            yield session

    yield factory
    await engine.dispose()
