"""Shared test fixtures for all test groups."""

import os

# Settings are cached on first use; these must be in place before any
# reconciler module calls get_settings().
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("GITHUB_WEBHOOK_SECRET", "gh_webhook_test_secret")
os.environ.setdefault("LEDGER_SECRET_KEY", "ledger_test_key")
os.environ.setdefault("FRONTEND_URL", "https://app.example.test")
os.environ.setdefault("CUSTOMER_CREATION_WAIT_SECONDS", "2")
os.environ.setdefault("CUSTOMER_CREATION_POLL_SECONDS", "0.01")

from datetime import UTC, datetime

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from reconciler.core.config import get_settings
from reconciler.core.locking import PaymentLock
from reconciler.db.base import Base, set_session_factory
from reconciler.db.redis import set_redis

get_settings.cache_clear()


class FrozenClock:
    """Callable clock for services that take ``clock=``."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """SQLite file database with all tables created.

    A file (not :memory:) so concurrent sessions see each other's commits.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciler.db'}")

    import reconciler.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory, also installed as the global one used by routes."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    set_session_factory(factory)
    yield factory
    set_session_factory(None)


@pytest.fixture
async def db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis():
    """Fake Redis, also installed as the shared client."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    set_redis(fake_redis)
    yield fake_redis
    set_redis(None)
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
def payment_lock(redis) -> PaymentLock:
    return PaymentLock(redis_client=redis)
