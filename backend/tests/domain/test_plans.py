"""Tests for the plan catalog, status mapping and the Stripe price table."""

from unittest.mock import MagicMock

import pytest

from toolmeter.entitlements.plans import (
    PLAN_LIMITS,
    UNLIMITED,
    PlanType,
    PriceCatalog,
    SubscriptionStatus,
    limits_for,
    map_provider_status,
    parse_plan,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


def test_free_plan_is_six_trial_uses():
    limits = limits_for(PlanType.FREE)
    assert limits.monthly_limit == 6
    assert limits.features == {"trial_usage"}
    assert not limits.unlimited


def test_essential_plan_is_150_per_tool():
    limits = limits_for("essential")
    assert limits.monthly_limit == 150
    assert "standard_support" in limits.features


def test_professional_plan_is_unlimited():
    limits = limits_for(PlanType.PROFESSIONAL)
    assert limits.monthly_limit == UNLIMITED
    assert limits.unlimited
    assert {"unlimited_usage", "priority_support", "advanced_features"} <= limits.features


@pytest.mark.parametrize("plan_id", [None, "", "enterprise", "PROFESSIONAL"])
def test_unknown_plan_gets_free_limits(plan_id):
    assert parse_plan(plan_id) == PlanType.FREE
    assert limits_for(plan_id) == PLAN_LIMITS[PlanType.FREE]


def test_every_plan_has_limits():
    assert set(PLAN_LIMITS) == set(PlanType)


# ---------------------------------------------------------------------------
# Provider status mapping
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "provider_status,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("canceled", SubscriptionStatus.CANCELLED),
        ("cancelled", SubscriptionStatus.CANCELLED),
        ("trialing", SubscriptionStatus.INACTIVE),
        ("incomplete_expired", SubscriptionStatus.INACTIVE),
        (None, SubscriptionStatus.INACTIVE),
    ],
)
def test_map_provider_status(provider_status, expected):
    assert map_provider_status(provider_status) == expected


# ---------------------------------------------------------------------------
# Price catalog
# ---------------------------------------------------------------------------


@pytest.fixture
def prices():
    return PriceCatalog({"price_ess": PlanType.ESSENTIAL, "price_pro": PlanType.PROFESSIONAL})


def test_price_round_trips_for_every_paid_plan(prices):
    for plan in (PlanType.ESSENTIAL, PlanType.PROFESSIONAL):
        assert prices.plan_for_price(prices.price_for_plan(plan)) == plan
        assert limits_for(prices.plan_for_price(prices.price_for_plan(plan))) == limits_for(plan)


def test_unknown_or_missing_price_maps_to_free(prices):
    assert prices.plan_for_price("price_unknown") == PlanType.FREE
    assert prices.plan_for_price(None) == PlanType.FREE
    assert prices.plan_for_price("") == PlanType.FREE


def test_unconfigured_price_never_matches():
    """An empty configured price must not turn empty incoming prices into a paid plan."""
    prices = PriceCatalog({"": PlanType.PROFESSIONAL, "price_ess": PlanType.ESSENTIAL})
    assert prices.plan_for_price("") == PlanType.FREE
    assert prices.price_for_plan(PlanType.PROFESSIONAL) is None
    assert prices.missing_plans() == [PlanType.PROFESSIONAL]


def test_from_settings_reads_configured_prices():
    settings = MagicMock()
    settings.stripe_price_essential = "price_e"
    settings.stripe_price_professional = "price_p"

    prices = PriceCatalog.from_settings(settings)

    assert prices.plan_for_price("price_e") == PlanType.ESSENTIAL
    assert prices.plan_for_price("price_p") == PlanType.PROFESSIONAL
    assert prices.missing_plans() == []
