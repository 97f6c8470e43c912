"""Subscription routes: entitlement status, Stripe sync, access checks and checkout."""

import structlog
from fastapi import APIRouter, Depends, HTTPException

from toolmeter.core.auth import AuthenticatedUser, require_auth
from toolmeter.core.exceptions import BillingProviderError, StoreUnavailableError
from toolmeter.entitlements.plans import PlanType
from toolmeter.entitlements.status import EntitlementStatus
from toolmeter.schemas.entitlements import (
    AccessCheckRequest,
    AccessDecisionResponse,
    CheckoutRequest,
    CheckoutResponse,
    EntitlementStatusResponse,
    SyncResponse,
    UsageSummary,
    render_quota,
)
from toolmeter.services import EntitlementServices, get_services

logger = structlog.get_logger(__name__)

router = APIRouter()


def _status_response(status: EntitlementStatus) -> EntitlementStatusResponse:
    return EntitlementStatusResponse(
        plan_type=status.plan_type,
        status=status.status,
        current_period_end=status.current_period_end,
        usage=UsageSummary(
            total=status.usage_total,
            by_tool=status.usage_by_tool,
            limit=render_quota(status.limit),
            remaining=render_quota(status.remaining),
        ),
        features=status.features,
        fallback_mode=status.fallback_mode,
    )


# ── Status ──────────────────────────────────────────────────────────


@router.get("/status", response_model=EntitlementStatusResponse)
async def get_subscription_status(
    user: AuthenticatedUser = Depends(require_auth),
    services: EntitlementServices = Depends(get_services),
):
    """Return the user's plan, billing period, usage and features.

    Served from the cached plan and session usage while the store is down.
    """
    return _status_response(await services.status.get_status(user.user_id))


@router.post("/status", response_model=EntitlementStatusResponse)
async def refresh_subscription_status(
    user: AuthenticatedUser = Depends(require_auth),
    services: EntitlementServices = Depends(get_services),
):
    """Sync with Stripe first, then return the status (used after checkout redirects)."""
    result = await services.reconciler.sync_subscription_status(user.user_id)
    if not result.success:
        logger.info("status_refresh_sync_failed", user_id=user.user_id, error=result.error)
    return _status_response(await services.status.get_status(user.user_id))


@router.post("/sync", response_model=SyncResponse)
async def sync_subscription(
    user: AuthenticatedUser = Depends(require_auth),
    services: EntitlementServices = Depends(get_services),
):
    result = await services.reconciler.sync_subscription_status(user.user_id)
    return SyncResponse(
        success=result.success,
        plan_type=result.plan_type,
        status=result.status,
        error=result.error,
    )


# ── Access ──────────────────────────────────────────────────────────


@router.post("/check", response_model=AccessDecisionResponse)
async def check_access(
    body: AccessCheckRequest,
    user: AuthenticatedUser = Depends(require_auth),
    services: EntitlementServices = Depends(get_services),
):
    """Preview the gate's decision for a tool without consuming a use."""
    decision = await services.gate.check_access(user.user_id, body.tool_name)
    return AccessDecisionResponse(
        can_use=decision.can_use,
        remaining=render_quota(decision.remaining),
        reason=decision.reason_code,
        plan_type=decision.plan_type,
        fallback_mode=decision.fallback_mode,
        upgrade_required=decision.upgrade_required,
        message=decision.message,
    )


@router.post("/sign-out", status_code=204)
async def sign_out(
    user: AuthenticatedUser = Depends(require_auth),
    services: EntitlementServices = Depends(get_services),
):
    """Drop the user's degraded-mode session counters."""
    await services.tracker.clear(user.user_id)
    logger.info("fallback_session_cleared", user_id=user.user_id)


# ── Checkout ────────────────────────────────────────────────────────


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    user: AuthenticatedUser = Depends(require_auth),
    services: EntitlementServices = Depends(get_services),
):
    """Create a Stripe Checkout session for a paid plan and return the URL."""
    plan = PlanType(body.plan)
    price_ref = services.prices.price_for_plan(plan)
    if not price_ref:
        logger.error("checkout_price_not_configured", plan=plan.value)
        raise HTTPException(status_code=503, detail=f"Plan '{plan.value}' is not available for purchase")

    settings = services.settings
    try:
        customer_ref = await services.billing.get_or_create_customer(user.user_id, user.email)
        # The stored customer wins if another checkout got there first
        customer_ref = await services.store.ensure_customer(user.user_id, customer_ref)
        checkout_url = await services.billing.create_checkout_session(
            customer_ref=customer_ref,
            price_ref=price_ref,
            user_id=user.user_id,
            success_url=f"{settings.frontend_url}/dashboard?checkout_success=true",
            cancel_url=f"{settings.frontend_url}/pricing",
        )
    except BillingProviderError as exc:
        raise HTTPException(status_code=502, detail="Billing provider unavailable. Please try again.") from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Billing temporarily unavailable. Please try again.") from exc

    logger.info("checkout_session_created", user_id=user.user_id, plan=plan.value)
    return CheckoutResponse(checkout_url=checkout_url)
