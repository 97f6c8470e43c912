"""Usage recorder: commit one unit of consumption after a successful tool call."""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from redis.exceptions import RedisError

from toolmeter.core.exceptions import StoreUnavailableError
from toolmeter.entitlements.gate import load_entitlement
from toolmeter.entitlements.plans import PlanType, limits_for
from toolmeter.entitlements.store import billing_period_start

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RecordResult:
    success: bool
    fallback_mode: bool


class UsageRecorder:
    """Mirror of the gate's fallback discipline for the write side.

    Callers invoke ``record_usage`` only after the gated operation returned a
    2xx-equivalent result. ``commit`` is the durable path on its own and is
    what fallback replay uses, since it must surface store failures.
    """

    def __init__(self, store, health, tracker, plan_cache, trial_uses: int | None = None):
        self.store = store
        self.health = health
        self.tracker = tracker
        self.plan_cache = plan_cache
        self.trial_uses = trial_uses if trial_uses is not None else limits_for(PlanType.FREE).monthly_limit

    async def record_usage(self, user_id: str, tool_name: str, now: datetime | None = None) -> RecordResult:
        if not await self.health.is_healthy():
            return await self._record_fallback(user_id, tool_name, now)

        try:
            recorded = await self.commit(user_id, tool_name, now)
        except StoreUnavailableError as exc:
            await self.health.mark_unhealthy(f"recorder_write_failed:{exc.operation}")
            return await self._record_fallback(user_id, tool_name, now)
        return RecordResult(success=recorded, fallback_mode=False)

    async def commit(self, user_id: str, tool_name: str, now: datetime | None = None) -> bool:
        """Apply one use to the durable store.

        Returns False only when a trial balance is already at zero (two
        concurrent calls raced past the gate); raises StoreUnavailableError on
        store failure.
        """
        now = now or datetime.now(UTC)
        subscription, plan = await load_entitlement(self.store, self.plan_cache, user_id, now)

        if plan == PlanType.PROFESSIONAL:
            return True

        if plan == PlanType.ESSENTIAL:
            await self.store.increment_usage(user_id, tool_name, billing_period_start(subscription, now))
            return True

        if await self.store.consume_trial_use(user_id, tool_name):
            return True

        # Replayed fallback usage can arrive before the user ever hit the gate
        if await self.store.get_trial(user_id) is None:
            await self.store.get_or_create_trial(user_id, self.trial_uses)
            if await self.store.consume_trial_use(user_id, tool_name):
                return True

        logger.warning("trial_use_not_recorded", user_id=user_id, tool=tool_name, reason="balance_exhausted")
        return False

    async def _record_fallback(self, user_id: str, tool_name: str, now: datetime | None) -> RecordResult:
        try:
            count = await self.tracker.increment_fallback(user_id, tool_name, now)
        except RedisError as exc:
            # Store and shared tracker both down: the use is lost
            logger.warning(
                "fallback_usage_not_recorded",
                user_id=user_id,
                tool=tool_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RecordResult(success=False, fallback_mode=True)
        logger.info("fallback_usage_recorded", user_id=user_id, tool=tool_name, session_count=count)
        return RecordResult(success=True, fallback_mode=True)
