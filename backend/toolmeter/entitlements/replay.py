"""FallbackReplayer: moves degraded-mode usage into durable counters.

Runs as an asyncio.Task next to the web app. Each cycle, if the store reports
healthy, the replay queue is drained and every item is committed in order
through ``UsageRecorder.commit``. The first failure stops the cycle and puts
the unreplayed tail back at the head of the queue for the next cycle.

Delivery is at-least-once: an item that committed just before a connection
drop can be replayed again. Overcounting by a handful of uses after an outage
is the accepted cost.
"""

import asyncio
from dataclasses import dataclass

import structlog

from toolmeter.core.exceptions import StoreUnavailableError
from toolmeter.metrics.cloudwatch import emit_business_event

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReplayReport:
    replayed: int
    requeued: int
    skipped: bool = False


class FallbackReplayer:
    def __init__(self, tracker, recorder, health, interval_seconds: float = 60.0):
        self.tracker = tracker
        self.recorder = recorder
        self.health = health
        self.interval_seconds = interval_seconds

    async def replay_once(self) -> ReplayReport:
        if not await self.health.is_healthy():
            return ReplayReport(replayed=0, requeued=0, skipped=True)

        items = await self.tracker.drain_queue()
        if not items:
            return ReplayReport(replayed=0, requeued=0)

        replayed = 0
        for index, item in enumerate(items):
            try:
                await self.recorder.commit(item.user_id, item.tool_name, item.occurred_at)
            except StoreUnavailableError as exc:
                remaining = items[index:]
                await self.tracker.requeue(remaining)
                await self.health.mark_unhealthy(f"replay_failed:{exc.operation}")
                logger.warning(
                    "fallback_replay_interrupted",
                    replayed=replayed,
                    requeued=len(remaining),
                    error=str(exc),
                )
                return ReplayReport(replayed=replayed, requeued=len(remaining))
            replayed += 1

        logger.info("fallback_usage_replayed", replayed=replayed)
        await emit_business_event("fallback_usage_replayed")
        return ReplayReport(replayed=replayed, requeued=0)

    async def run(self) -> None:
        """Replay on a fixed interval until cancelled."""
        logger.info("fallback_replayer_started", interval_seconds=self.interval_seconds)
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.replay_once()
            except Exception as exc:
                # A broken cycle (e.g. Redis-scoped queue unreachable) must not kill the worker
                logger.warning("fallback_replay_cycle_failed", error=str(exc), error_type=type(exc).__name__)
