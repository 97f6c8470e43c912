"""Wiring for the entitlement subsystem.

Everything that holds entitlement state is built once per app in the lifespan
and kept on ``app.state.services``; routes resolve it through ``get_services``.
"""

from dataclasses import dataclass

import structlog
from fastapi import Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolmeter.billing.reconciler import BillingReconciler
from toolmeter.billing.retry_queue import WebhookRetryQueue
from toolmeter.billing.stripe_client import StripeBillingClient
from toolmeter.billing.webhook_guard import WebhookGuard
from toolmeter.core.config import Settings
from toolmeter.entitlements.fallback import FallbackPlanCache, InMemoryFallbackTracker, RedisFallbackTracker
from toolmeter.entitlements.gate import EntitlementGate
from toolmeter.entitlements.health import StoreHealthMonitor
from toolmeter.entitlements.plans import PriceCatalog
from toolmeter.entitlements.recorder import UsageRecorder
from toolmeter.entitlements.replay import FallbackReplayer
from toolmeter.entitlements.status import EntitlementStatusService
from toolmeter.entitlements.store import EntitlementStore
from toolmeter.monitoring.consistency import ConsistencyMonitor

logger = structlog.get_logger(__name__)


@dataclass
class EntitlementServices:
    settings: Settings
    store: EntitlementStore
    health: StoreHealthMonitor
    tracker: InMemoryFallbackTracker | RedisFallbackTracker
    plan_cache: FallbackPlanCache
    prices: PriceCatalog
    billing: StripeBillingClient
    gate: EntitlementGate
    recorder: UsageRecorder
    status: EntitlementStatusService
    reconciler: BillingReconciler
    replayer: FallbackReplayer
    consistency: ConsistencyMonitor
    webhook_guard: WebhookGuard
    retry_queue: WebhookRetryQueue

    def background_jobs(self) -> dict:
        """Coroutines the lifespan runs as long-lived tasks, keyed by task name."""
        return {
            "fallback_replay": self.replayer.run(),
            "consistency_check": self.consistency.run(),
            "grace_period_sweep": self.consistency.run_grace_sweep(),
            "webhook_retry": self.retry_queue.run(),
        }


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    dialect: str = "postgresql",
    redis: Redis | None = None,
) -> EntitlementServices:
    store = EntitlementStore(session_factory, dialect=dialect, timeout_seconds=settings.store_timeout_seconds)
    health = StoreHealthMonitor(
        store,
        ttl_seconds=settings.store_health_ttl_seconds,
        probe_timeout=settings.store_timeout_seconds,
    )

    if settings.fallback_scope == "redis":
        if redis is None:
            raise RuntimeError("fallback_scope=redis requires REDIS_URL to be configured")
        tracker = RedisFallbackTracker(redis, limit=settings.fallback_limit, queue_max=settings.fallback_queue_max)
    else:
        tracker = InMemoryFallbackTracker(limit=settings.fallback_limit, queue_max=settings.fallback_queue_max)

    plan_cache = FallbackPlanCache(max_size=settings.fallback_plan_cache_size)
    prices = PriceCatalog.from_settings(settings)
    billing = StripeBillingClient(
        settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.stripe_timeout_seconds,
    )

    gate = EntitlementGate(store, health, tracker, plan_cache)
    recorder = UsageRecorder(store, health, tracker, plan_cache)
    status = EntitlementStatusService(
        store,
        health,
        tracker,
        plan_cache,
        housekeeping_tools=settings.housekeeping_tools,
        fallback_limit=settings.fallback_limit,
    )
    reconciler = BillingReconciler(
        store,
        billing,
        prices,
        plan_cache,
        grace_period_days=settings.grace_period_days,
        payment_retry_ceiling=settings.payment_retry_ceiling,
        write_attempts=settings.subscription_write_attempts,
        write_backoff_seconds=settings.subscription_write_backoff_seconds,
        batch_delay_seconds=settings.batch_sync_delay_seconds,
    )
    replayer = FallbackReplayer(tracker, recorder, health, interval_seconds=settings.replay_interval_seconds)
    consistency = ConsistencyMonitor(
        store,
        reconciler,
        plan_cache,
        interval_seconds=settings.consistency_interval_seconds,
        stale_after_seconds=settings.stale_subscription_seconds,
        sync_delay_seconds=settings.stale_sync_delay_seconds,
        grace_sweep_interval_seconds=settings.grace_sweep_interval_seconds,
    )
    webhook_guard = WebhookGuard(
        settings.stripe_webhook_ips,
        allowlist_enabled=settings.webhook_ip_allowlist_enabled,
        allow_localhost=settings.debug,
        trusted_proxies=settings.webhook_trusted_proxies,
        rate_limit=settings.webhook_rate_limit,
        window_seconds=settings.webhook_rate_window_seconds,
    )
    retry_queue = WebhookRetryQueue(reconciler, interval_seconds=settings.webhook_retry_interval_seconds)

    logger.info(
        "entitlement_services_built",
        fallback_scope=settings.fallback_scope,
        fallback_limit=settings.fallback_limit,
        dialect=dialect,
    )
    return EntitlementServices(
        settings=settings,
        store=store,
        health=health,
        tracker=tracker,
        plan_cache=plan_cache,
        prices=prices,
        billing=billing,
        gate=gate,
        recorder=recorder,
        status=status,
        reconciler=reconciler,
        replayer=replayer,
        consistency=consistency,
        webhook_guard=webhook_guard,
        retry_queue=retry_queue,
    )


def get_services(request: Request) -> EntitlementServices:
    """FastAPI dependency returning the app's service bundle."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Entitlement services not initialized. Is the app lifespan running?")
    return services
