"""Cached reachability of the primary entitlement store.

``is_healthy()`` probes at most once per TTL window, so a slow-but-not-down
database costs one bounded probe per window rather than a timeout on every
gate check. Read failures elsewhere call ``mark_unhealthy()`` so the next
calls go straight to degraded mode without waiting for the TTL to lapse.
"""

import asyncio
import time

import structlog

from toolmeter.core.exceptions import StoreUnavailableError
from toolmeter.monitoring.alerts import security_event

logger = structlog.get_logger(__name__)


class StoreHealthMonitor:
    def __init__(self, store, ttl_seconds: float = 30.0, probe_timeout: float = 5.0, clock=time.monotonic):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.probe_timeout = probe_timeout
        self._clock = clock
        self._healthy = True
        self._checked_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def last_known(self) -> bool:
        """Most recent verdict without probing."""
        return self._healthy

    async def is_healthy(self) -> bool:
        if self._fresh():
            return self._healthy

        async with self._lock:
            # Another caller may have probed while we waited
            if self._fresh():
                return self._healthy
            healthy = await self._probe()
            await self._record(healthy, reason=None if healthy else "probe_failed")
            return healthy

    async def mark_unhealthy(self, reason: str) -> None:
        """Record a failure observed outside the probe (e.g. a failed read)."""
        await self._record(False, reason=reason)

    async def _probe(self) -> bool:
        try:
            await asyncio.wait_for(self.store.ping(), timeout=self.probe_timeout)
            return True
        except (StoreUnavailableError, TimeoutError) as exc:
            logger.warning("store_health_probe_failed", error=str(exc), error_type=type(exc).__name__)
            return False

    def _fresh(self) -> bool:
        return self._checked_at is not None and self._clock() - self._checked_at < self.ttl_seconds

    async def _record(self, healthy: bool, reason: str | None) -> None:
        was_healthy = self._healthy
        self._healthy = healthy
        self._checked_at = self._clock()

        if was_healthy and not healthy:
            await security_event("store_unavailable", "high", reason=reason)
            logger.error("degraded_mode_entered", reason=reason)
        elif healthy and not was_healthy:
            logger.info("store_recovered")
