"""Plan catalog: plan limits, the Stripe price table, and status mapping.

Pure lookups with no I/O. Anything unrecognised resolves to the free tier so
a typo in configuration or a new Stripe price never grants more than free.
"""

from dataclasses import dataclass
from enum import Enum

from toolmeter.core.config import Settings

UNLIMITED = -1  # -1 = unlimited, rendered as "unlimited" at the API edge


class PlanType(str, Enum):
    FREE = "free"
    ESSENTIAL = "essential"
    PROFESSIONAL = "professional"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class PlanLimits:
    monthly_limit: int  # UNLIMITED for professional; trial lifetime for free
    features: frozenset[str]

    @property
    def unlimited(self) -> bool:
        return self.monthly_limit == UNLIMITED


PLAN_LIMITS: dict[PlanType, PlanLimits] = {
    PlanType.FREE: PlanLimits(6, frozenset({"trial_usage"})),
    PlanType.ESSENTIAL: PlanLimits(150, frozenset({"monthly_usage", "standard_support"})),
    PlanType.PROFESSIONAL: PlanLimits(
        UNLIMITED,
        frozenset({"unlimited_usage", "priority_support", "advanced_features"}),
    ),
}


def parse_plan(plan_id: str | PlanType | None) -> PlanType:
    """Coerce a stored plan identifier to PlanType, defaulting to free."""
    if isinstance(plan_id, PlanType):
        return plan_id
    try:
        return PlanType(plan_id)
    except ValueError:
        return PlanType.FREE


def limits_for(plan_id: str | PlanType | None) -> PlanLimits:
    """Return quota and feature set for a plan; unknown plans get free limits."""
    return PLAN_LIMITS[parse_plan(plan_id)]


def map_provider_status(status: str | None) -> SubscriptionStatus:
    """Map a Stripe subscription lifecycle status onto the local enum."""
    if status == "active":
        return SubscriptionStatus.ACTIVE
    if status == "past_due":
        return SubscriptionStatus.PAST_DUE
    if status in ("canceled", "cancelled"):
        return SubscriptionStatus.CANCELLED
    return SubscriptionStatus.INACTIVE


class PriceCatalog:
    """Explicit Stripe price ID <-> plan table, built from configuration."""

    def __init__(self, price_to_plan: dict[str, PlanType]):
        # Empty keys mean "not configured" and must never match an incoming price
        self._price_to_plan = {price: plan for price, plan in price_to_plan.items() if price}
        self._plan_to_price = {plan: price for price, plan in self._price_to_plan.items()}

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriceCatalog":
        return cls({
            settings.stripe_price_essential: PlanType.ESSENTIAL,
            settings.stripe_price_professional: PlanType.PROFESSIONAL,
        })

    def plan_for_price(self, price_ref: str | None) -> PlanType:
        if not price_ref:
            return PlanType.FREE
        return self._price_to_plan.get(price_ref, PlanType.FREE)

    def price_for_plan(self, plan: PlanType) -> str | None:
        return self._plan_to_price.get(plan)

    def missing_plans(self) -> list[PlanType]:
        """Paid plans with no configured price (checked at startup)."""
        return [
            plan
            for plan in (PlanType.ESSENTIAL, PlanType.PROFESSIONAL)
            if plan not in self._plan_to_price
        ]
