"""Shared test fixtures for all test groups.

Store-backed tests run against a throwaway SQLite file per test. A file (not
``:memory:``) is used so concurrent sessions see one database, the way they
would against PostgreSQL.
"""

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from toolmeter.db.base import Base
from toolmeter.entitlements.fallback import FallbackPlanCache, InMemoryFallbackTracker
from toolmeter.entitlements.gate import EntitlementGate
from toolmeter.entitlements.health import StoreHealthMonitor
from toolmeter.entitlements.recorder import UsageRecorder
from toolmeter.entitlements.store import EntitlementStore

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
PERIOD_START = datetime(2026, 3, 1, tzinfo=UTC)
PERIOD_END = datetime(2026, 4, 1, tzinfo=UTC)


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """Create a SQLite test engine with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}", echo=False)

    # Import all models so metadata is populated
    import toolmeter.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> EntitlementStore:
    return EntitlementStore(session_factory, dialect="sqlite", timeout_seconds=5.0)


@pytest.fixture
def health(store) -> StoreHealthMonitor:
    return StoreHealthMonitor(store, ttl_seconds=30.0)


@pytest.fixture
def tracker() -> InMemoryFallbackTracker:
    return InMemoryFallbackTracker(limit=3, queue_max=1000)


@pytest.fixture
def plan_cache() -> FallbackPlanCache:
    return FallbackPlanCache(max_size=100)


@pytest.fixture
def gate(store, health, tracker, plan_cache) -> EntitlementGate:
    return EntitlementGate(store, health, tracker, plan_cache)


@pytest.fixture
def recorder(store, health, tracker, plan_cache) -> UsageRecorder:
    return UsageRecorder(store, health, tracker, plan_cache)


@pytest.fixture
def subscribe(store: EntitlementStore):
    """Seed an active subscription row: ``await subscribe("user_1", "essential")``."""

    async def _subscribe(user_id: str, plan: str, **overrides):
        values = {
            "stripe_customer_id": f"cus_{user_id}",
            "stripe_subscription_id": f"sub_{user_id}",
            "plan_type": plan,
            "status": "active",
        }
        values.update(overrides)
        period = values.pop("period", (PERIOD_START, PERIOD_END))
        return await store.upsert_subscription(user_id, period=period, **values)

    return _subscribe
