"""ConsistencyMonitor: periodic safety net over subscription rows.

Two anomaly classes, checked every ``interval_seconds`` (30 min by default):

1. Stale: status ``active`` but not touched for longer than the staleness
   window. A webhook may have been missed, so each one is re-synced from
   Stripe (spaced out to stay well under Stripe's rate limits).
2. Inconsistent: ``active`` on a paid plan with no Stripe subscription behind
   it, typically a partially applied webhook. Downgraded to free/inactive
   immediately.

Also runs the grace-period expiry sweep on its own interval. Failures in any
pass are logged and the loop carries on.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from toolmeter.entitlements.plans import PlanType, SubscriptionStatus
from toolmeter.monitoring.alerts import security_event

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConsistencyReport:
    stale_checked: int
    stale_synced: int
    inconsistencies_fixed: int


class ConsistencyMonitor:
    def __init__(
        self,
        store,
        reconciler,
        plan_cache,
        *,
        interval_seconds: float = 1800.0,
        stale_after_seconds: float = 3600.0,
        sync_delay_seconds: float = 0.2,
        grace_sweep_interval_seconds: float = 3600.0,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.reconciler = reconciler
        self.plan_cache = plan_cache
        self.interval_seconds = interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.sync_delay_seconds = sync_delay_seconds
        self.grace_sweep_interval_seconds = grace_sweep_interval_seconds
        self._sleep = sleep

    async def check_stale_subscriptions(self, now: datetime | None = None) -> tuple[int, int]:
        now = now or datetime.now(UTC)
        stale = await self.store.list_stale_active(now - timedelta(seconds=self.stale_after_seconds))

        synced = 0
        for index, subscription in enumerate(stale):
            if index:
                await self._sleep(self.sync_delay_seconds)
            logger.warning(
                "stale_subscription_detected",
                user_id=subscription.user_id,
                last_updated=subscription.updated_at.isoformat() if subscription.updated_at else None,
                severity="medium",
            )
            result = await self.reconciler.sync_subscription_status(subscription.user_id)
            if result.success:
                synced += 1
        return len(stale), synced

    async def detect_inconsistencies(self) -> int:
        fixed = 0
        for subscription in await self.store.list_inconsistent():
            await security_event(
                "data_inconsistency",
                "high",
                user_id=subscription.user_id,
                plan_type=subscription.plan_type.value,
                issue="active_paid_plan_without_subscription_ref",
            )
            if await self.store.downgrade(
                subscription.user_id, SubscriptionStatus.INACTIVE, only_if_inconsistent=True
            ):
                self.plan_cache.set(subscription.user_id, PlanType.FREE)
                fixed += 1
        return fixed

    async def run_once(self, now: datetime | None = None) -> ConsistencyReport:
        checked, synced = await self.check_stale_subscriptions(now)
        fixed = await self.detect_inconsistencies()
        logger.info("consistency_check_complete", stale_checked=checked, stale_synced=synced, fixed=fixed)
        return ConsistencyReport(checked, synced, fixed)

    async def run(self) -> None:
        logger.info("consistency_monitor_started", interval_seconds=self.interval_seconds)
        while True:
            await self._sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as exc:
                logger.warning("consistency_check_failed", error=str(exc), error_type=type(exc).__name__)

    async def run_grace_sweep(self) -> None:
        logger.info("grace_period_sweep_started", interval_seconds=self.grace_sweep_interval_seconds)
        while True:
            await self._sleep(self.grace_sweep_interval_seconds)
            try:
                await self.reconciler.expire_grace_periods()
            except Exception as exc:
                logger.warning("grace_period_sweep_failed", error=str(exc), error_type=type(exc).__name__)
