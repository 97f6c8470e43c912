"""API-specific test fixtures.

The app runs its real lifespan against a throwaway SQLite file. Store calls
made from a test must run on the TestClient's own event loop, so they go
through the ``run`` fixture (the client's blocking portal).
"""

from datetime import UTC, datetime, timedelta
from functools import partial

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from toolmeter.core.auth import AuthenticatedUser, require_auth
from toolmeter.core.config import Settings
from toolmeter.main import create_app
from toolmeter.tools.registry import ToolRegistry

TEST_USER = AuthenticatedUser(user_id="user_api", email="api@example.com", claims={"sub": "user_api"})

PERIOD_START = datetime.now(UTC).replace(microsecond=0) - timedelta(days=1)
PERIOD_END = PERIOD_START + timedelta(days=30)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        redis_url="",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test",
        stripe_price_essential="price_ess",
        stripe_price_professional="price_pro",
        webhook_ip_allowlist_enabled=False,
        background_jobs_enabled=False,
    )


@pytest.fixture
def tool_registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool("polly")
    async def polly(payload: dict, user: AuthenticatedUser) -> dict:
        return {"audio_url": f"https://cdn.example.com/{user.user_id}.mp3", "text": payload.get("text", "")}

    @registry.tool("broken")
    async def broken(payload: dict, user: AuthenticatedUser) -> dict:
        raise RuntimeError("provider exploded")

    @registry.tool("picky")
    async def picky(payload: dict, user: AuthenticatedUser) -> dict:
        raise HTTPException(status_code=422, detail="text is required")

    return registry


@pytest.fixture
def app(settings, tool_registry):
    app = create_app(settings, tool_registry)
    app.dependency_overrides[require_auth] = lambda: TEST_USER
    return app


@pytest.fixture
def api_client(app):
    """TestClient running the app lifespan; server errors surface as 500 responses."""
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


@pytest.fixture
def services(api_client):
    return api_client.app.state.services


@pytest.fixture
def run(api_client):
    """Run a coroutine function on the app's event loop: ``run(store.get_trial, "user_api")``."""

    def _run(fn, *args, **kwargs):
        return api_client.portal.call(partial(fn, *args, **kwargs))

    return _run


@pytest.fixture
def billing_period() -> tuple[datetime, datetime]:
    return PERIOD_START, PERIOD_END


@pytest.fixture
def subscribe(services, run):
    """Seed a subscription for the test user whose period covers today."""

    def _subscribe(plan: str, user_id: str = TEST_USER.user_id, **overrides):
        values = {
            "stripe_customer_id": f"cus_{user_id}",
            "stripe_subscription_id": f"sub_{user_id}",
            "plan_type": plan,
            "status": "active",
        }
        values.update(overrides)
        return run(services.store.upsert_subscription, user_id, period=(PERIOD_START, PERIOD_END), **values)

    return _subscribe
