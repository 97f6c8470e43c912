"""Pydantic schemas for the subscription, tool and webhook endpoints.

Quota figures cross the API as either a non-negative integer or the literal
string ``"unlimited"``; internally the catalog uses ``UNLIMITED`` (-1).
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from toolmeter.entitlements.plans import UNLIMITED, PlanType, SubscriptionStatus

Quota = int | Literal["unlimited"]


def render_quota(value: int) -> Quota:
    return "unlimited" if value == UNLIMITED else value


# ==================== STATUS ====================


class UsageSummary(BaseModel):
    total: int = Field(..., description="Uses counted towards the current period (or trial)")
    by_tool: dict[str, int] = Field(default_factory=dict)
    limit: Quota
    remaining: Quota


class EntitlementStatusResponse(BaseModel):
    plan_type: PlanType
    status: SubscriptionStatus | None  # None while the store is unreachable
    current_period_end: datetime | None = None
    usage: UsageSummary
    features: list[str]
    fallback_mode: bool = False


class SyncResponse(BaseModel):
    success: bool
    plan_type: PlanType
    status: SubscriptionStatus | None
    error: str | None = None


# ==================== ACCESS ====================


class AccessCheckRequest(BaseModel):
    tool_name: str = Field(..., min_length=1, max_length=100)


class AccessDecisionResponse(BaseModel):
    can_use: bool
    remaining: Quota
    reason: str
    plan_type: PlanType
    fallback_mode: bool
    upgrade_required: bool
    message: str | None = None


class UsageLimitResponse(BaseModel):
    """402 body returned when a tool call is refused."""

    error: Literal["usage_limit_reached"] = "usage_limit_reached"
    reason: str
    plan_type: PlanType
    remaining: Quota
    fallback_mode: bool
    upgrade_required: bool
    message: str | None = None


class ToolCallResponse(BaseModel):
    tool_name: str
    result: dict
    fallback_mode: bool = False


# ==================== CHECKOUT / WEBHOOKS ====================


class CheckoutRequest(BaseModel):
    plan: Literal["essential", "professional"]


class CheckoutResponse(BaseModel):
    checkout_url: str


class WebhookAck(BaseModel):
    received: bool = True
