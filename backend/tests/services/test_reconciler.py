"""Tests for BillingReconciler: pull sync, webhook handlers and the grace-period machine.

Covers:
- sync with and without a Stripe subscription on record
- subscription created/updated/deleted, including out-of-order and replaced subscriptions
- payment succeeded (reactivation, plan from price, period rollover)
- payment failed: repeated first failure, retry ceiling, lost first event
- grace-period expiry sweep
- retried store writes for subscription changes
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from toolmeter.billing.events import BillingEvent, EventKind, InvoiceRecord, ProviderSubscription
from toolmeter.billing.reconciler import BillingReconciler, PaymentFailureOutcome
from toolmeter.core.exceptions import BillingProviderError, StoreUnavailableError
from toolmeter.entitlements.plans import PlanType, PriceCatalog, SubscriptionStatus

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
MARCH = datetime(2026, 3, 1, tzinfo=UTC)
APRIL = datetime(2026, 4, 1, tzinfo=UTC)
MAY = datetime(2026, 5, 1, tzinfo=UTC)


@pytest.fixture
def provider():
    return AsyncMock()


@pytest.fixture
def fake_sleep():
    return AsyncMock()


@pytest.fixture
def reconciler(store, provider, plan_cache, fake_sleep):
    prices = PriceCatalog({"price_ess": PlanType.ESSENTIAL, "price_pro": PlanType.PROFESSIONAL})
    return BillingReconciler(
        store,
        provider,
        prices,
        plan_cache,
        grace_period_days=7,
        payment_retry_ceiling=3,
        write_attempts=3,
        write_backoff_seconds=1.0,
        batch_delay_seconds=0.1,
        sleep=fake_sleep,
    )


def _remote(sub_id="sub_user_1", status="active", price="price_ess", period=(MARCH, APRIL), customer="cus_user_1"):
    return ProviderSubscription(
        subscription_ref=sub_id,
        customer_ref=customer,
        status=status,
        price_ref=price,
        current_period_start=period[0],
        current_period_end=period[1],
    )


def _subscription_event(kind: EventKind, remote: ProviderSubscription, event_id="evt_1") -> BillingEvent:
    return BillingEvent(event_id=event_id, event_type=kind.value, kind=kind, subscription=remote)


def _invoice_event(kind: EventKind, invoice: InvoiceRecord, event_id="evt_inv") -> BillingEvent:
    return BillingEvent(event_id=event_id, event_type=kind.value, kind=kind, invoice=invoice)


# ---------------------------------------------------------------------------
# Pull sync
# ---------------------------------------------------------------------------


async def test_sync_without_subscription_ref_is_free_inactive_and_skips_stripe(reconciler, store, provider):
    await store.upsert_subscription("user_1", plan_type=PlanType.ESSENTIAL, status=SubscriptionStatus.ACTIVE)

    result = await reconciler.sync_subscription_status("user_1")

    assert result.success
    assert result.plan_type == PlanType.FREE
    assert result.status == SubscriptionStatus.INACTIVE
    provider.retrieve_subscription.assert_not_awaited()
    assert (await store.get_subscription("user_1")).plan_type == PlanType.FREE


async def test_sync_applies_stripe_state(reconciler, store, provider, plan_cache, subscribe):
    await subscribe("user_1", "essential")
    provider.retrieve_subscription.return_value = _remote(price="price_pro", period=(APRIL, MAY))

    result = await reconciler.sync_subscription_status("user_1")

    assert result.success
    assert result.plan_type == PlanType.PROFESSIONAL
    provider.retrieve_subscription.assert_awaited_once_with("sub_user_1")
    sub = await store.get_subscription("user_1")
    assert sub.current_period_start == APRIL
    assert plan_cache.get("user_1") == PlanType.PROFESSIONAL


async def test_sync_reports_provider_failure(reconciler, provider, plan_cache, subscribe):
    await subscribe("user_1", "essential")
    plan_cache.set("user_1", PlanType.ESSENTIAL)
    provider.retrieve_subscription.side_effect = BillingProviderError("Stripe retrieve_subscription timed out")

    result = await reconciler.sync_subscription_status("user_1")

    assert not result.success
    assert result.plan_type == PlanType.ESSENTIAL
    assert "timed out" in result.error


async def test_batch_sync_spaces_calls(reconciler, provider, fake_sleep, subscribe):
    await subscribe("user_1", "essential")
    await subscribe("user_2", "professional")
    provider.retrieve_subscription.side_effect = [_remote(), BillingProviderError("boom")]

    counts = await reconciler.batch_sync()

    assert counts == {"synced": 1, "failed": 1}
    fake_sleep.assert_awaited_once_with(0.1)


# ---------------------------------------------------------------------------
# Subscription events
# ---------------------------------------------------------------------------


async def test_subscription_created_activates_plan(reconciler, store, plan_cache):
    await store.ensure_customer("user_1", "cus_user_1")

    await reconciler.handle_event(_subscription_event(EventKind.SUBSCRIPTION_CREATED, _remote()))

    sub = await store.get_subscription("user_1")
    assert sub.plan_type == PlanType.ESSENTIAL
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.stripe_subscription_id == "sub_user_1"
    assert plan_cache.get("user_1") == PlanType.ESSENTIAL


async def test_late_update_does_not_roll_period_back(reconciler, store, subscribe):
    await subscribe("user_1", "essential", period=(APRIL, MAY))

    await reconciler.handle_event(_subscription_event(EventKind.SUBSCRIPTION_UPDATED, _remote(period=(MARCH, APRIL))))

    assert (await store.get_subscription("user_1")).current_period_start == APRIL


async def test_update_for_replaced_subscription_is_ignored(reconciler, store, subscribe):
    await subscribe("user_1", "professional", stripe_subscription_id="sub_new")

    await reconciler.handle_event(
        _subscription_event(EventKind.SUBSCRIPTION_UPDATED, _remote(sub_id="sub_old", status="canceled"))
    )

    sub = await store.get_subscription("user_1")
    assert sub.stripe_subscription_id == "sub_new"
    assert sub.status == SubscriptionStatus.ACTIVE


async def test_past_due_update_before_payment_failure_opens_grace(reconciler, store, plan_cache, subscribe):
    await subscribe("user_1", "essential")
    before = datetime.now(UTC)

    await reconciler.handle_event(_subscription_event(EventKind.SUBSCRIPTION_UPDATED, _remote(status="past_due")))

    sub = await store.get_subscription("user_1")
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert before + timedelta(days=7) <= sub.grace_period_end <= datetime.now(UTC) + timedelta(days=7)
    assert sub.entitled_plan() == PlanType.ESSENTIAL
    assert plan_cache.get("user_1") == PlanType.ESSENTIAL


async def test_past_due_update_keeps_existing_grace_deadline(reconciler, store, subscribe):
    deadline = datetime.now(UTC).replace(microsecond=0) + timedelta(days=2)
    await subscribe("user_1", "essential", status="past_due", grace_period_end=deadline)

    await reconciler.handle_event(_subscription_event(EventKind.SUBSCRIPTION_UPDATED, _remote(status="past_due")))

    assert (await store.get_subscription("user_1")).grace_period_end == deadline


async def test_sync_of_past_due_subscription_opens_grace(reconciler, store, provider, subscribe):
    await subscribe("user_1", "essential")
    provider.retrieve_subscription.return_value = _remote(status="past_due")

    result = await reconciler.sync_subscription_status("user_1")

    assert result.status == SubscriptionStatus.PAST_DUE
    sub = await store.get_subscription("user_1")
    assert sub.grace_period_end is not None
    assert sub.entitled_plan() == PlanType.ESSENTIAL


async def test_unknown_customer_is_skipped(reconciler, store):
    await reconciler.handle_event(_subscription_event(EventKind.SUBSCRIPTION_UPDATED, _remote(customer="cus_ghost")))

    assert await store.get_subscription_by_customer("cus_ghost") is None


async def test_subscription_deleted_downgrades_and_clears_ref(reconciler, store, plan_cache, subscribe):
    await subscribe("user_1", "professional")
    plan_cache.set("user_1", PlanType.PROFESSIONAL)

    await reconciler.handle_event(_subscription_event(EventKind.SUBSCRIPTION_DELETED, _remote(status="canceled")))

    sub = await store.get_subscription("user_1")
    assert sub.plan_type == PlanType.FREE
    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.stripe_subscription_id is None
    assert plan_cache.get("user_1") == PlanType.FREE


async def test_deletion_of_old_subscription_keeps_new_one(reconciler, store, subscribe):
    await subscribe("user_1", "professional", stripe_subscription_id="sub_new")

    await reconciler.handle_event(
        _subscription_event(EventKind.SUBSCRIPTION_DELETED, _remote(sub_id="sub_old", status="canceled"))
    )

    assert (await store.get_subscription("user_1")).plan_type == PlanType.PROFESSIONAL


async def test_subscription_write_is_retried_then_succeeds(reconciler, store, fake_sleep, subscribe):
    await subscribe("user_1", "essential")
    real_upsert = store.upsert_subscription
    calls = {"n": 0}

    async def flaky_upsert(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] < 3:
            raise StoreUnavailableError("upsert_subscription")
        return await real_upsert(*args, **kwargs)

    with patch.object(store, "upsert_subscription", side_effect=flaky_upsert):
        await reconciler.handle_event(_subscription_event(EventKind.SUBSCRIPTION_UPDATED, _remote(price="price_pro")))

    assert calls["n"] == 3
    assert [c.args[0] for c in fake_sleep.await_args_list] == [1.0, 2.0]
    assert (await store.get_subscription("user_1")).plan_type == PlanType.PROFESSIONAL


async def test_subscription_write_gives_up_after_three_attempts(reconciler, store, subscribe):
    await subscribe("user_1", "essential")

    with patch.object(store, "upsert_subscription", side_effect=StoreUnavailableError("upsert_subscription")):
        with pytest.raises(StoreUnavailableError):
            await reconciler.handle_event(_subscription_event(EventKind.SUBSCRIPTION_UPDATED, _remote()))


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


async def test_payment_succeeded_reactivates_and_rolls_period(reconciler, store, subscribe):
    await subscribe("user_1", "essential", status="past_due", grace_period_end=NOW + timedelta(days=2))
    invoice = InvoiceRecord(
        invoice_ref="in_1",
        customer_ref="cus_user_1",
        subscription_ref="sub_user_1",
        amount_paid=1900,
        price_ref="price_ess",
        period_start=APRIL,
        period_end=MAY,
    )

    await reconciler.handle_event(_invoice_event(EventKind.INVOICE_PAYMENT_SUCCEEDED, invoice))

    sub = await store.get_subscription("user_1")
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.grace_period_end is None
    assert sub.current_period_start == APRIL


async def test_payment_succeeded_with_unknown_price_keeps_plan(reconciler, store, subscribe):
    await subscribe("user_1", "professional")
    invoice = InvoiceRecord(customer_ref="cus_user_1", subscription_ref="sub_user_1", price_ref="price_legacy")

    await reconciler.handle_event(_invoice_event(EventKind.INVOICE_PAYMENT_SUCCEEDED, invoice))

    assert (await store.get_subscription("user_1")).plan_type == PlanType.PROFESSIONAL


async def test_payment_succeeded_for_other_subscription_is_ignored(reconciler, store, subscribe):
    await subscribe("user_1", "essential", status="past_due", grace_period_end=NOW + timedelta(days=2))
    invoice = InvoiceRecord(customer_ref="cus_user_1", subscription_ref="sub_other")

    await reconciler.handle_event(_invoice_event(EventKind.INVOICE_PAYMENT_SUCCEEDED, invoice))

    assert (await store.get_subscription("user_1")).status == SubscriptionStatus.PAST_DUE


async def test_repeated_first_failure_keeps_one_grace_deadline(reconciler, store, subscribe):
    await subscribe("user_1", "essential")
    invoice = InvoiceRecord(customer_ref="cus_user_1", subscription_ref="sub_user_1", attempt_count=1)

    await reconciler.handle_event(_invoice_event(EventKind.INVOICE_PAYMENT_FAILED, invoice, "evt_a"))
    first = await store.get_subscription("user_1")
    await reconciler.handle_event(_invoice_event(EventKind.INVOICE_PAYMENT_FAILED, invoice, "evt_b"))
    second = await store.get_subscription("user_1")

    assert first.status == SubscriptionStatus.PAST_DUE
    assert first.grace_period_end is not None
    assert second.grace_period_end == first.grace_period_end


async def test_payment_failure_outcomes(reconciler, subscribe):
    await subscribe("user_1", "essential")

    assert await reconciler.handle_payment_failure("user_1", 1, NOW) == PaymentFailureOutcome.GRACE_PERIOD
    assert await reconciler.handle_payment_failure("user_1", 2, NOW) == PaymentFailureOutcome.ALREADY_IN_GRACE
    assert await reconciler.handle_payment_failure("user_1", 3, NOW) == PaymentFailureOutcome.DOWNGRADED


async def test_grace_deadline_is_seven_days(reconciler, store, subscribe):
    await subscribe("user_1", "essential")

    await reconciler.handle_payment_failure("user_1", 1, NOW)

    assert (await store.get_subscription("user_1")).grace_period_end == NOW + timedelta(days=7)


async def test_retry_ceiling_downgrades_to_free_cancelled(reconciler, store, plan_cache, subscribe):
    await subscribe("user_1", "professional")
    plan_cache.set("user_1", PlanType.PROFESSIONAL)

    outcome = await reconciler.handle_payment_failure("user_1", 3, NOW)

    assert outcome == PaymentFailureOutcome.DOWNGRADED
    sub = await store.get_subscription("user_1")
    assert sub.plan_type == PlanType.FREE
    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.grace_period_end is None
    assert plan_cache.get("user_1") == PlanType.FREE


async def test_lost_first_failure_still_opens_grace(reconciler, store, subscribe):
    """Attempt 2 arriving without attempt 1 must not leave the user unprotected."""
    await subscribe("user_1", "essential")

    outcome = await reconciler.handle_payment_failure("user_1", 2, NOW)

    assert outcome == PaymentFailureOutcome.GRACE_PERIOD
    assert (await store.get_subscription("user_1")).status == SubscriptionStatus.PAST_DUE


async def test_failure_after_cancellation_is_no_action(reconciler, subscribe):
    await subscribe("user_1", "free", status="cancelled")

    assert await reconciler.handle_payment_failure("user_1", 1, NOW) == PaymentFailureOutcome.NO_ACTION


# ---------------------------------------------------------------------------
# Grace expiry sweep
# ---------------------------------------------------------------------------


async def test_expire_grace_periods_downgrades_only_expired(reconciler, store, subscribe):
    await subscribe("expired", "essential", status="past_due", grace_period_end=NOW - timedelta(hours=1))
    await subscribe("still_in_grace", "essential", status="past_due", grace_period_end=NOW + timedelta(days=1))

    expired = await reconciler.expire_grace_periods(NOW)

    assert expired == 1
    assert (await store.get_subscription("expired")).status == SubscriptionStatus.CANCELLED
    assert (await store.get_subscription("still_in_grace")).status == SubscriptionStatus.PAST_DUE
