"""In-process retry queue for webhook events that were claimed but not applied.

Once an event ID is claimed, Stripe's own redelivery is acknowledged as a
duplicate, so an event whose store write failed is kept here and retried on
progressive delays. After ``max_attempts`` it is dropped and logged; the
consistency sweep and grace-period sweep remain the backstop.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass

import structlog

from toolmeter.billing.events import BillingEvent
from toolmeter.core.exceptions import StoreUnavailableError

logger = structlog.get_logger(__name__)

RETRY_DELAYS = (1.0, 2.0, 5.0, 10.0, 30.0)  # seconds, indexed by attempts so far


@dataclass(eq=False)
class QueuedWebhook:
    event: BillingEvent
    attempts: int
    next_retry_at: float


class WebhookRetryQueue:
    def __init__(
        self,
        reconciler,
        max_attempts: int = 5,
        max_size: int = 500,
        interval_seconds: float = 30.0,
        clock=time.monotonic,
    ):
        self.reconciler = reconciler
        self.max_attempts = max_attempts
        self.max_size = max_size
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._items: deque[QueuedWebhook] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, event: BillingEvent) -> None:
        if len(self._items) >= self.max_size:
            dropped = self._items.popleft()
            logger.error("webhook_retry_queue_overflow", dropped_event_id=dropped.event.event_id)
        self._items.append(QueuedWebhook(event, attempts=0, next_retry_at=self._clock() + RETRY_DELAYS[0]))
        logger.info("webhook_queued_for_retry", event_id=event.event_id, event_type=event.event_type)

    async def process_due(self) -> int:
        """Retry every event whose delay has elapsed. Returns how many succeeded."""
        now = self._clock()
        due = [item for item in self._items if item.next_retry_at <= now]
        succeeded = 0

        for item in due:
            try:
                await self.reconciler.handle_event(item.event)
            except StoreUnavailableError as exc:
                item.attempts += 1
                if item.attempts >= self.max_attempts:
                    self._items.remove(item)
                    logger.error(
                        "webhook_retry_abandoned",
                        event_id=item.event.event_id,
                        attempts=item.attempts,
                        error=str(exc),
                    )
                else:
                    delay = RETRY_DELAYS[min(item.attempts, len(RETRY_DELAYS) - 1)]
                    item.next_retry_at = now + delay
                continue

            self._items.remove(item)
            succeeded += 1
            logger.info("webhook_retry_succeeded", event_id=item.event.event_id, attempts=item.attempts + 1)

        return succeeded

    async def run(self) -> None:
        logger.info("webhook_retry_queue_started", interval_seconds=self.interval_seconds)
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.process_due()
            except Exception as exc:
                logger.warning("webhook_retry_cycle_failed", error=str(exc), error_type=type(exc).__name__)
