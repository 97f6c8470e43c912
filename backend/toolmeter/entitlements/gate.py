"""Entitlement gate: may this user run this tool right now?

Decision order:

1. Store known to be unhealthy -> degraded-mode budget (``fallback_limit``
   uses per tool per user), regardless of plan.
2. Resolve the entitled plan from the store (priming the fallback plan cache).
3. professional -> always allowed, unlimited.
4. essential -> per-tool counter for the current billing period vs 150.
5. free -> lifetime trial balance, created lazily on first access.

Any store failure during 2-5 marks the store unhealthy and answers from step 1
for this call. If the degraded-mode tracker itself is unreachable (Redis
scope) the call is denied as a fallback-limit decision. The gate never raises
on either failure and never grants unlimited access while degraded.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from redis.exceptions import RedisError

from toolmeter.core.exceptions import StoreUnavailableError
from toolmeter.entitlements.plans import UNLIMITED, PlanType, limits_for
from toolmeter.entitlements.store import SubscriptionSnapshot, billing_period_start

logger = structlog.get_logger(__name__)

# Reason codes
UNLIMITED_PLAN = "unlimited"
WITHIN_QUOTA = "within_quota"
QUOTA_EXHAUSTED = "quota_exhausted"
TRIAL_AVAILABLE = "trial_available"
TRIAL_EXHAUSTED = "trial_exhausted"
FALLBACK_AVAILABLE = "fallback_available"
FALLBACK_LIMIT_REACHED = "fallback_limit_reached"


@dataclass(frozen=True)
class AccessDecision:
    can_use: bool
    remaining: int  # UNLIMITED (-1) for professional
    reason_code: str
    fallback_mode: bool
    plan_type: PlanType
    message: str | None = None

    @property
    def upgrade_required(self) -> bool:
        """Hard denial from a real quota, as opposed to a degraded-mode soft limit."""
        return not self.can_use and not self.fallback_mode


async def load_entitlement(
    store, plan_cache, user_id: str, now: datetime
) -> tuple[SubscriptionSnapshot | None, PlanType]:
    """Read the subscription and work out the plan the user is entitled to.

    A successful read always wins over the cache and refreshes it.
    """
    subscription = await store.get_subscription(user_id)
    plan = subscription.entitled_plan(now) if subscription is not None else PlanType.FREE
    plan_cache.set(user_id, plan)
    return subscription, plan


class EntitlementGate:
    def __init__(self, store, health, tracker, plan_cache, trial_uses: int | None = None):
        self.store = store
        self.health = health
        self.tracker = tracker
        self.plan_cache = plan_cache
        self.trial_uses = trial_uses if trial_uses is not None else limits_for(PlanType.FREE).monthly_limit

    async def check_access(self, user_id: str, tool_name: str, now: datetime | None = None) -> AccessDecision:
        now = now or datetime.now(UTC)

        if not await self.health.is_healthy():
            return await self._fallback_decision(user_id, tool_name)

        try:
            return await self._check_store(user_id, tool_name, now)
        except StoreUnavailableError as exc:
            await self.health.mark_unhealthy(f"gate_read_failed:{exc.operation}")
            return await self._fallback_decision(user_id, tool_name)

    async def _check_store(self, user_id: str, tool_name: str, now: datetime) -> AccessDecision:
        subscription, plan = await load_entitlement(self.store, self.plan_cache, user_id, now)
        limits = limits_for(plan)

        if plan == PlanType.PROFESSIONAL:
            return AccessDecision(True, UNLIMITED, UNLIMITED_PLAN, False, plan)

        if plan == PlanType.ESSENTIAL:
            period_start = billing_period_start(subscription, now)
            used = await self.store.get_usage_count(user_id, tool_name, period_start)
            remaining = max(0, limits.monthly_limit - used)
            if used < limits.monthly_limit:
                return AccessDecision(True, remaining, WITHIN_QUOTA, False, plan)
            logger.info("usage_quota_exhausted", user_id=user_id, tool=tool_name, used=used)
            return AccessDecision(
                False,
                0,
                QUOTA_EXHAUSTED,
                False,
                plan,
                message=(
                    f"You have used all {limits.monthly_limit} monthly uses of {tool_name} on the "
                    "Essential plan. Upgrade to Professional for unlimited access."
                ),
            )

        trial = await self.store.get_trial(user_id)
        if trial is None:
            trial = await self.store.get_or_create_trial(user_id, self.trial_uses)
            logger.info("trial_balance_created", user_id=user_id, uses_remaining=trial.uses_remaining)

        if trial.uses_remaining > 0:
            return AccessDecision(True, trial.uses_remaining, TRIAL_AVAILABLE, False, plan)
        return AccessDecision(
            False,
            0,
            TRIAL_EXHAUSTED,
            False,
            plan,
            message="Your free trial uses are exhausted. Upgrade to Essential or Professional to keep going.",
        )

    async def _fallback_decision(self, user_id: str, tool_name: str) -> AccessDecision:
        # Plan shown for context only; the degraded budget is the same for everyone
        plan = self.plan_cache.get(user_id)
        try:
            fallback = await self.tracker.check_fallback(user_id, tool_name)
        except RedisError as exc:
            logger.warning(
                "fallback_tracker_unavailable",
                user_id=user_id,
                tool=tool_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return self._fallback_denied(plan, tool_name)
        if fallback.can_use:
            return AccessDecision(True, fallback.remaining, FALLBACK_AVAILABLE, True, plan)

        logger.info("fallback_limit_reached", user_id=user_id, tool=tool_name)
        return self._fallback_denied(plan, tool_name)

    @staticmethod
    def _fallback_denied(plan: PlanType, tool_name: str) -> AccessDecision:
        return AccessDecision(
            False,
            0,
            FALLBACK_LIMIT_REACHED,
            True,
            plan,
            message=f"Usage of {tool_name} is temporarily limited. Please try again shortly.",
        )
