"""Entitlement status for the dashboard: plan, period, usage and features."""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from toolmeter.core.exceptions import StoreUnavailableError
from toolmeter.entitlements.gate import load_entitlement
from toolmeter.entitlements.plans import UNLIMITED, PlanType, SubscriptionStatus, limits_for
from toolmeter.entitlements.store import billing_period_start

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EntitlementStatus:
    plan_type: PlanType
    status: SubscriptionStatus | None
    current_period_end: datetime | None
    usage_total: int
    usage_by_tool: dict[str, int]
    limit: int
    remaining: int
    features: list[str]
    fallback_mode: bool = False


class EntitlementStatusService:
    """Read-only view over the same state the gate decides on.

    Paid plans report this period's counters (housekeeping tools excluded),
    free plans report the trial balance without creating one. While the store
    is unreachable the cached plan is shown with this session's fallback usage.
    """

    def __init__(
        self,
        store,
        health,
        tracker,
        plan_cache,
        *,
        housekeeping_tools: list[str] | frozenset[str] = frozenset(),
        fallback_limit: int = 3,
    ):
        self.store = store
        self.health = health
        self.tracker = tracker
        self.plan_cache = plan_cache
        self.housekeeping_tools = frozenset(housekeeping_tools)
        self.fallback_limit = fallback_limit

    async def get_status(self, user_id: str, now: datetime | None = None) -> EntitlementStatus:
        now = now or datetime.now(UTC)
        if not await self.health.is_healthy():
            return await self._degraded_status(user_id)

        try:
            return await self._store_status(user_id, now)
        except StoreUnavailableError as exc:
            await self.health.mark_unhealthy(f"status_read_failed:{exc.operation}")
            return await self._degraded_status(user_id)

    async def _store_status(self, user_id: str, now: datetime) -> EntitlementStatus:
        subscription, plan = await load_entitlement(self.store, self.plan_cache, user_id, now)
        limits = limits_for(plan)
        status = subscription.status if subscription is not None else SubscriptionStatus.INACTIVE
        period_end = subscription.current_period_end if subscription is not None else None
        features = sorted(limits.features)

        if plan == PlanType.FREE:
            trial = await self.store.get_trial(user_id)
            if trial is None:
                by_tool, remaining = {}, limits.monthly_limit
            else:
                by_tool, remaining = trial.tools_used, trial.uses_remaining
            return EntitlementStatus(
                plan_type=plan,
                status=status,
                current_period_end=period_end,
                usage_total=limits.monthly_limit - remaining,
                usage_by_tool=by_tool,
                limit=limits.monthly_limit,
                remaining=remaining,
                features=features,
            )

        by_tool = await self.store.usage_for_period(
            user_id, billing_period_start(subscription, now), exclude=self.housekeeping_tools
        )
        total = sum(by_tool.values())
        if limits.unlimited:
            remaining = UNLIMITED
        else:
            # Quota is per tool; the headline figure is the most-used tool's headroom
            busiest = max(by_tool.values(), default=0)
            remaining = max(0, limits.monthly_limit - busiest)
        return EntitlementStatus(
            plan_type=plan,
            status=status,
            current_period_end=period_end,
            usage_total=total,
            usage_by_tool=by_tool,
            limit=limits.monthly_limit,
            remaining=remaining,
            features=features,
        )

    async def _degraded_status(self, user_id: str) -> EntitlementStatus:
        plan = self.plan_cache.get(user_id)
        by_tool = await self.tracker.usage_for(user_id)
        busiest = max(by_tool.values(), default=0)
        logger.info("entitlement_status_degraded", user_id=user_id, cached_plan=plan.value)
        return EntitlementStatus(
            plan_type=plan,
            status=None,
            current_period_end=None,
            usage_total=sum(by_tool.values()),
            usage_by_tool=by_tool,
            limit=self.fallback_limit,
            remaining=max(0, self.fallback_limit - busiest),
            features=sorted(limits_for(plan).features),
            fallback_mode=True,
        )
