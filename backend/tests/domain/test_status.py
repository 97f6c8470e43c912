"""Tests for EntitlementStatusService."""

from datetime import UTC, datetime

import pytest

from toolmeter.entitlements.plans import UNLIMITED, PlanType, SubscriptionStatus
from toolmeter.entitlements.status import EntitlementStatusService

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
PERIOD_START = datetime(2026, 3, 1, tzinfo=UTC)
PERIOD_END = datetime(2026, 4, 1, tzinfo=UTC)


@pytest.fixture
def status_service(store, health, tracker, plan_cache):
    return EntitlementStatusService(
        store,
        health,
        tracker,
        plan_cache,
        housekeeping_tools=["subscription-status", "usage-check"],
        fallback_limit=3,
    )


async def test_essential_sums_period_usage_excluding_housekeeping(status_service, store, subscribe):
    await subscribe("ess_user", "essential")
    for tool, count in (("polly", 10), ("ocr", 4), ("usage-check", 7)):
        for _ in range(count):
            await store.increment_usage("ess_user", tool, PERIOD_START)
    # Last period's usage is not this period's
    await store.increment_usage("ess_user", "polly", datetime(2026, 2, 1, tzinfo=UTC))

    status = await status_service.get_status("ess_user", NOW)

    assert status.plan_type == PlanType.ESSENTIAL
    assert status.status == SubscriptionStatus.ACTIVE
    assert status.current_period_end == PERIOD_END
    assert status.usage_total == 14
    assert status.usage_by_tool == {"polly": 10, "ocr": 4}
    assert status.limit == 150
    assert status.remaining == 140
    assert "standard_support" in status.features
    assert not status.fallback_mode


async def test_professional_reports_unlimited(status_service, store, subscribe):
    await subscribe("pro_user", "professional")
    await store.increment_usage("pro_user", "polly", PERIOD_START)

    status = await status_service.get_status("pro_user", NOW)

    assert status.limit == UNLIMITED
    assert status.remaining == UNLIMITED
    assert status.usage_total == 1


async def test_free_user_without_trial_sees_full_allowance_and_nothing_is_created(status_service, store):
    status = await status_service.get_status("new_user", NOW)

    assert status.plan_type == PlanType.FREE
    assert status.status == SubscriptionStatus.INACTIVE
    assert status.remaining == 6
    assert status.usage_total == 0
    assert await store.get_trial("new_user") is None


async def test_free_user_reports_trial_balance(status_service, store):
    await store.get_or_create_trial("trial_user", 6)
    await store.consume_trial_use("trial_user", "polly")
    await store.consume_trial_use("trial_user", "ocr")

    status = await status_service.get_status("trial_user", NOW)

    assert status.usage_total == 2
    assert status.usage_by_tool == {"polly": 1, "ocr": 1}
    assert status.remaining == 4


async def test_degraded_status_uses_cached_plan_and_session_usage(
    status_service, health, tracker, plan_cache
):
    plan_cache.set("pro_user", PlanType.PROFESSIONAL)
    await tracker.increment_fallback("pro_user", "polly", NOW)
    await tracker.increment_fallback("pro_user", "polly", NOW)
    await health.mark_unhealthy("test")

    status = await status_service.get_status("pro_user", NOW)

    assert status.fallback_mode
    assert status.status is None
    assert status.plan_type == PlanType.PROFESSIONAL
    assert status.usage_by_tool == {"polly": 2}
    assert status.limit == 3
    assert status.remaining == 1
