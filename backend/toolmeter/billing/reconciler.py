"""BillingReconciler: keeps local subscription rows in agreement with Stripe.

Two directions:

- pull: ``sync_subscription_status`` retrieves the subscription from Stripe
  and upserts the local row (on demand, from the consistency sweep, and from
  ``batch_sync``);
- push: ``handle_event`` applies decoded webhook events.

Every handler is safe to re-run and tolerant of out-of-order delivery:

- rows are upserted by user, with the authoritative fields from the event;
- billing periods only ever move forward;
- entering a grace period is a conditional write that keeps the first deadline;
- events for a subscription other than the one on record are ignored
  unless they describe an active replacement.

Usage counters are keyed by period start, so advancing the period on a paid
invoice or subscription update *is* the usage reset for the new period.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from enum import Enum

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from toolmeter.billing.events import BillingEvent, EventKind, InvoiceRecord, ProviderSubscription
from toolmeter.core.exceptions import BillingProviderError, StoreUnavailableError
from toolmeter.entitlements.plans import (
    PlanType,
    PriceCatalog,
    SubscriptionStatus,
    map_provider_status,
)
from toolmeter.entitlements.store import SubscriptionSnapshot
from toolmeter.metrics.cloudwatch import emit_business_event

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SyncResult:
    success: bool
    plan_type: PlanType
    status: SubscriptionStatus | None
    error: str | None = None


class PaymentFailureOutcome(str, Enum):
    GRACE_PERIOD = "grace_period"
    ALREADY_IN_GRACE = "already_in_grace"
    DOWNGRADED = "downgraded"
    NO_ACTION = "no_action"


class BillingReconciler:
    def __init__(
        self,
        store,
        provider,
        prices: PriceCatalog,
        plan_cache,
        *,
        grace_period_days: int = 7,
        payment_retry_ceiling: int = 3,
        write_attempts: int = 3,
        write_backoff_seconds: float = 1.0,
        batch_delay_seconds: float = 0.1,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.provider = provider
        self.prices = prices
        self.plan_cache = plan_cache
        self.grace_period_days = grace_period_days
        self.payment_retry_ceiling = payment_retry_ceiling
        self.write_attempts = write_attempts
        self.write_backoff_seconds = write_backoff_seconds
        self.batch_delay_seconds = batch_delay_seconds
        self._sleep = sleep

    # ── Pull ────────────────────────────────────────────────────────

    async def sync_subscription_status(self, user_id: str) -> SyncResult:
        """Bring one user's row in line with Stripe.

        Without a Stripe subscription on record the row is forced to
        free/inactive and Stripe is not contacted.
        """
        log = logger.bind(user_id=user_id)
        try:
            subscription = await self.store.get_subscription(user_id)
            if subscription is None or subscription.stripe_subscription_id is None:
                await self.store.upsert_subscription(
                    user_id,
                    plan_type=PlanType.FREE,
                    status=SubscriptionStatus.INACTIVE,
                    grace_period_end=None,
                )
                self.plan_cache.set(user_id, PlanType.FREE)
                log.info("subscription_synced", plan_type="free", status="inactive", reason="no_subscription_ref")
                return SyncResult(True, PlanType.FREE, SubscriptionStatus.INACTIVE)

            remote = await self.provider.retrieve_subscription(subscription.stripe_subscription_id)
            snapshot = await self._apply_provider_state(user_id, remote)
        except (StoreUnavailableError, BillingProviderError) as exc:
            log.warning("subscription_sync_failed", error=str(exc), error_type=type(exc).__name__)
            return SyncResult(False, self.plan_cache.get(user_id), None, error=str(exc))

        log.info("subscription_synced", plan_type=snapshot.plan_type.value, status=snapshot.status.value)
        return SyncResult(True, snapshot.plan_type, snapshot.status)

    async def batch_sync(self) -> dict[str, int]:
        """Sync every user with a Stripe subscription on record, spaced to respect rate limits."""
        user_ids = await self.store.list_with_subscription_ref()
        synced = failed = 0
        for index, user_id in enumerate(user_ids):
            if index:
                await self._sleep(self.batch_delay_seconds)
            result = await self.sync_subscription_status(user_id)
            if result.success:
                synced += 1
            else:
                failed += 1

        logger.info("batch_sync_complete", synced=synced, failed=failed)
        return {"synced": synced, "failed": failed}

    # ── Push ────────────────────────────────────────────────────────

    async def handle_event(self, event: BillingEvent) -> None:
        """Apply one decoded webhook event.

        Raises StoreUnavailableError when the store write could not be made,
        so the caller can queue the event for a later retry.
        """
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        if event.kind == EventKind.IGNORED:
            log.debug("billing_event_ignored")
            return

        customer_ref = event.customer_ref
        if not customer_ref:
            log.warning("billing_event_missing_customer")
            return

        subscription = await self.store.get_subscription_by_customer(customer_ref)
        if subscription is None:
            log.warning("billing_event_unknown_customer", customer_id=customer_ref)
            return

        if event.kind in (EventKind.SUBSCRIPTION_CREATED, EventKind.SUBSCRIPTION_UPDATED):
            await self._handle_subscription_change(subscription, event.subscription)
        elif event.kind == EventKind.SUBSCRIPTION_DELETED:
            await self._handle_subscription_deleted(subscription, event.subscription)
        elif event.kind == EventKind.INVOICE_PAYMENT_SUCCEEDED:
            await self._handle_payment_succeeded(subscription, event.invoice)
        elif event.kind == EventKind.INVOICE_PAYMENT_FAILED:
            await self.handle_payment_failure(subscription.user_id, event.invoice.attempt_count)

    async def handle_payment_failure(
        self, user_id: str, attempt_count: int, now: datetime | None = None
    ) -> PaymentFailureOutcome:
        """Grace-period state machine for failed renewals.

        Reaching the retry ceiling downgrades immediately, whatever grace time
        is left. Below it, the first failure seen opens a grace window and any
        further failure leaves that window untouched.
        """
        now = now or datetime.now(UTC)
        log = logger.bind(user_id=user_id, attempt_count=attempt_count)
        await emit_business_event("payment_failed", user_id=user_id)

        if attempt_count >= self.payment_retry_ceiling:
            downgraded = await self.store.downgrade(user_id, SubscriptionStatus.CANCELLED)
            if not downgraded:
                return PaymentFailureOutcome.NO_ACTION
            self.plan_cache.set(user_id, PlanType.FREE)
            log.warning("payment_retries_exhausted_downgraded")
            await emit_business_event("subscription_downgraded", user_id=user_id)
            return PaymentFailureOutcome.DOWNGRADED

        grace_end = now + timedelta(days=self.grace_period_days)
        if await self.store.enter_grace_period(user_id, grace_end):
            log.info("grace_period_started", grace_period_end=grace_end.isoformat())
            await emit_business_event("grace_period_started", user_id=user_id)
            return PaymentFailureOutcome.GRACE_PERIOD

        current = await self.store.get_subscription(user_id)
        if current is not None and current.grace_period_end is not None:
            log.info("payment_failed_within_grace", grace_period_end=current.grace_period_end.isoformat())
            return PaymentFailureOutcome.ALREADY_IN_GRACE

        log.info("payment_failed_no_action", status=current.status.value if current else None)
        return PaymentFailureOutcome.NO_ACTION

    async def expire_grace_periods(self, now: datetime | None = None) -> int:
        """Downgrade past_due users whose grace deadline has passed.

        Covers a lost or never-sent final-failure webhook.
        """
        now = now or datetime.now(UTC)
        expired = 0
        for user_id in await self.store.list_expired_grace_periods(now):
            if await self.store.downgrade(user_id, SubscriptionStatus.CANCELLED, only_if_expired_before=now):
                expired += 1
                self.plan_cache.set(user_id, PlanType.FREE)
                logger.warning("grace_period_expired_downgraded", user_id=user_id, severity="medium")
                await emit_business_event("subscription_downgraded", user_id=user_id)

        if expired:
            logger.info("grace_period_sweep_complete", expired=expired)
        return expired

    # ── Handlers ────────────────────────────────────────────────────

    async def _handle_subscription_change(
        self, current: SubscriptionSnapshot, remote: ProviderSubscription
    ) -> None:
        log = logger.bind(user_id=current.user_id, subscription_id=remote.subscription_ref)
        status = map_provider_status(remote.status)

        if (
            current.stripe_subscription_id is not None
            and current.stripe_subscription_id != remote.subscription_ref
            and status != SubscriptionStatus.ACTIVE
        ):
            log.info("subscription_change_for_replaced_subscription_ignored", status=status.value)
            return

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.write_attempts),
                wait=wait_incrementing(start=self.write_backoff_seconds, increment=self.write_backoff_seconds),
                retry=retry_if_exception_type(StoreUnavailableError),
                reraise=True,
                sleep=self._sleep,
                before_sleep=lambda rs: log.warning(
                    "subscription_write_retrying",
                    attempt=rs.attempt_number,
                    sleep_seconds=rs.next_action.sleep,
                ),
            ):
                with attempt:
                    snapshot = await self._apply_provider_state(current.user_id, remote)
        except StoreUnavailableError as exc:
            log.error("subscription_write_gave_up", attempts=self.write_attempts, error=str(exc))
            raise

        log.info("subscription_status_updated", plan_type=snapshot.plan_type.value, status=snapshot.status.value)
        if snapshot.status == SubscriptionStatus.ACTIVE and current.status != SubscriptionStatus.ACTIVE:
            await emit_business_event("subscription_activated", user_id=current.user_id)

    async def _handle_subscription_deleted(
        self, current: SubscriptionSnapshot, remote: ProviderSubscription
    ) -> None:
        if current.stripe_subscription_id not in (None, remote.subscription_ref):
            logger.info(
                "subscription_deleted_for_replaced_subscription_ignored",
                user_id=current.user_id,
                subscription_id=remote.subscription_ref,
            )
            return

        await self.store.downgrade(current.user_id, SubscriptionStatus.CANCELLED, clear_subscription_ref=True)
        self.plan_cache.set(current.user_id, PlanType.FREE)
        logger.info("subscription_cancelled", user_id=current.user_id, subscription_id=remote.subscription_ref)
        await emit_business_event("subscription_cancelled", user_id=current.user_id)

    async def _handle_payment_succeeded(self, current: SubscriptionSnapshot, invoice: InvoiceRecord) -> None:
        log = logger.bind(user_id=current.user_id, invoice_id=invoice.invoice_ref)
        if invoice.subscription_ref is None:
            log.info("payment_succeeded_without_subscription_ignored")
            return

        plan = self.prices.plan_for_price(invoice.price_ref) if invoice.price_ref else None
        if plan == PlanType.FREE:
            # Unknown price: keep whatever plan the subscription events established
            plan = None

        applied = await self.store.mark_payment_succeeded(
            current.user_id,
            subscription_ref=invoice.subscription_ref,
            plan=plan,
            period=invoice.period,
        )
        if not applied:
            log.info("payment_succeeded_for_other_subscription_ignored", subscription_id=invoice.subscription_ref)
            return

        rolled_over = (
            invoice.period_start is not None
            and current.current_period_start is not None
            and invoice.period_start > current.current_period_start
        )
        self.plan_cache.set(current.user_id, plan or current.plan_type)
        log.info(
            "payment_succeeded",
            amount_paid=invoice.amount_paid,
            period_rolled_over=rolled_over,
        )

    async def _apply_provider_state(self, user_id: str, remote: ProviderSubscription) -> SubscriptionSnapshot:
        plan = self.prices.plan_for_price(remote.price_ref)
        status = map_provider_status(remote.status)
        values: dict = {
            "plan_type": plan,
            "status": status,
            "stripe_subscription_id": remote.subscription_ref,
        }
        if status != SubscriptionStatus.PAST_DUE:
            values["grace_period_end"] = None

        snapshot = await self.store.upsert_subscription(user_id, period=remote.period, **values)
        if snapshot.status == SubscriptionStatus.PAST_DUE and snapshot.grace_period_end is None:
            # past_due reported before (or without) invoice.payment_failed
            grace_end = datetime.now(UTC) + timedelta(days=self.grace_period_days)
            if await self.store.enter_grace_period(user_id, grace_end):
                snapshot = replace(snapshot, grace_period_end=grace_end)
                logger.info(
                    "grace_period_started",
                    user_id=user_id,
                    grace_period_end=grace_end.isoformat(),
                    source="provider_status",
                )
                await emit_business_event("grace_period_started", user_id=user_id)
        self.plan_cache.set(user_id, snapshot.entitled_plan())
        return snapshot
