"""Primary entitlement store: subscriptions, usage counters, and trial balances.

Every public method opens its own session, is bounded by ``timeout_seconds``,
and converts driver/connection failures into ``StoreUnavailableError`` so
callers have a single failure type to degrade on.

Counter mutations are single statements evaluated by the database:

- usage: ``INSERT .. ON CONFLICT (user_id, tool_name, period_start)
  DO UPDATE SET usage_count = usage_count + 1``
- trial: ``UPDATE .. SET uses_remaining = uses_remaining - 1
  WHERE uses_remaining > 0``

so concurrent requests from the same user never lose an update.

"Not found" is a normal ``None`` result, never an exception.
"""

import asyncio
import calendar
import functools
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog
from sqlalchemy import and_, case, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolmeter.core.exceptions import StoreUnavailableError
from toolmeter.db.models import StripeWebhookEvent, Subscription, TrialBalance, UsageCounter
from toolmeter.entitlements.plans import PlanType, SubscriptionStatus, parse_plan

logger = structlog.get_logger(__name__)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _status(value: str | None) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return SubscriptionStatus.INACTIVE


@dataclass(frozen=True)
class SubscriptionSnapshot:
    user_id: str
    plan_type: PlanType
    status: SubscriptionStatus
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    grace_period_end: datetime | None = None
    updated_at: datetime | None = None

    def entitled_plan(self, now: datetime | None = None) -> PlanType:
        """Plan the user may consume right now.

        Active subscriptions keep their plan, as do past_due ones still inside
        their grace window. Everything else is treated as free.
        """
        now = now or datetime.now(UTC)
        if self.status == SubscriptionStatus.ACTIVE:
            return self.plan_type
        if (
            self.status == SubscriptionStatus.PAST_DUE
            and self.grace_period_end is not None
            and self.grace_period_end > now
        ):
            return self.plan_type
        return PlanType.FREE


@dataclass(frozen=True)
class TrialSnapshot:
    user_id: str
    uses_remaining: int
    tools_used: dict[str, int] = field(default_factory=dict)


def _month_before(start: datetime, anchor_day: int) -> datetime:
    year, month = (start.year, start.month - 1) if start.month > 1 else (start.year - 1, 12)
    return start.replace(year=year, month=month, day=min(anchor_day, calendar.monthrange(year, month)[1]))


def billing_period_start(subscription: SubscriptionSnapshot | None, now: datetime | None = None) -> datetime:
    """Start of the period usage counters are keyed by, for the instant ``now``.

    With a subscription period on record this is its start, stepped back one
    billing month at a time (keeping the anchor day) while ``now`` falls
    before it, so usage replayed from before a renewal lands in the period it
    happened in. Without one, the first instant of the UTC calendar month of
    ``now``.
    """
    now = now or datetime.now(UTC)
    if subscription is not None and subscription.current_period_start is not None:
        start = subscription.current_period_start
        anchor_day = start.day
        while now < start:
            start = _month_before(start, anchor_day)
        return start
    return datetime(now.year, now.month, 1, tzinfo=UTC)


def _snapshot(row: Subscription) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        user_id=row.user_id,
        plan_type=parse_plan(row.plan_type),
        status=_status(row.status),
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        grace_period_end=as_utc(row.grace_period_end),
        updated_at=as_utc(row.updated_at),
    )


def store_operation(func):
    """Bound a store coroutine by the store timeout and normalise failures."""

    @functools.wraps(func)
    async def wrapper(self: "EntitlementStore", *args, **kwargs):
        try:
            return await asyncio.wait_for(func(self, *args, **kwargs), timeout=self.timeout_seconds)
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            logger.warning(
                "entitlement_store_error",
                operation=func.__name__,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StoreUnavailableError(func.__name__, exc) from exc

    return wrapper


class EntitlementStore:
    """Async data-access layer over the entitlement tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dialect: str = "postgresql",
        timeout_seconds: float = 5.0,
    ):
        if dialect not in ("postgresql", "sqlite"):
            raise ValueError(f"Unsupported dialect for atomic upserts: {dialect}")
        self._session_factory = session_factory
        self._dialect = dialect
        self.timeout_seconds = timeout_seconds

    def _insert(self, model):
        return pg_insert(model) if self._dialect == "postgresql" else sqlite_insert(model)

    # ── Health ──────────────────────────────────────────────────────

    @store_operation
    async def ping(self) -> None:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))

    # ── Subscriptions ───────────────────────────────────────────────

    @store_operation
    async def get_subscription(self, user_id: str) -> SubscriptionSnapshot | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
            row = result.scalar_one_or_none()
            return _snapshot(row) if row is not None else None

    @store_operation
    async def get_subscription_by_customer(self, customer_ref: str) -> SubscriptionSnapshot | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription).where(Subscription.stripe_customer_id == customer_ref)
            )
            row = result.scalar_one_or_none()
            return _snapshot(row) if row is not None else None

    @store_operation
    async def upsert_subscription(
        self,
        user_id: str,
        *,
        period: tuple[datetime, datetime | None] | None = None,
        **values,
    ) -> SubscriptionSnapshot:
        """Insert or update the user's subscription row in one statement.

        ``values`` may carry stripe_customer_id, stripe_subscription_id,
        plan_type, status and grace_period_end; an explicit None clears the
        column. ``period`` is applied forward-only: an older period delivered
        late never replaces a newer one.
        """
        now = datetime.now(UTC)
        values = {key: (value.value if hasattr(value, "value") else value) for key, value in values.items()}
        insert_values = {"user_id": user_id, "created_at": now, "updated_at": now, **values}
        insert_values.setdefault("plan_type", PlanType.FREE.value)
        insert_values.setdefault("status", SubscriptionStatus.INACTIVE.value)
        if period is not None:
            insert_values["current_period_start"], insert_values["current_period_end"] = period

        stmt = self._insert(Subscription).values(**insert_values)
        update_values = {**values, "updated_at": now}
        if period is not None:
            advances = or_(
                Subscription.current_period_start.is_(None),
                stmt.excluded.current_period_start >= Subscription.current_period_start,
            )
            update_values["current_period_start"] = case(
                (advances, stmt.excluded.current_period_start),
                else_=Subscription.current_period_start,
            )
            update_values["current_period_end"] = case(
                (advances, stmt.excluded.current_period_end),
                else_=Subscription.current_period_end,
            )
        stmt = stmt.on_conflict_do_update(index_elements=[Subscription.user_id], set_=update_values)

        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
            result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
            return _snapshot(result.scalar_one())

    @store_operation
    async def ensure_customer(self, user_id: str, customer_ref: str) -> str:
        """Attach a Stripe customer to the user unless one is already attached.

        Returns the customer ID that is actually stored, which is the earlier
        one when two checkouts race.
        """
        now = datetime.now(UTC)
        stmt = self._insert(Subscription).values(
            user_id=user_id,
            stripe_customer_id=customer_ref,
            plan_type=PlanType.FREE.value,
            status=SubscriptionStatus.INACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.user_id],
            set_={
                "stripe_customer_id": func.coalesce(
                    Subscription.stripe_customer_id, stmt.excluded.stripe_customer_id
                ),
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
            result = await session.execute(
                select(Subscription.stripe_customer_id).where(Subscription.user_id == user_id)
            )
            return result.scalar_one()

    @store_operation
    async def mark_payment_succeeded(
        self,
        user_id: str,
        *,
        subscription_ref: str | None,
        plan: PlanType | None = None,
        period: tuple[datetime, datetime | None] | None = None,
    ) -> bool:
        """Reactivate after a paid invoice; False if the invoice is for another subscription."""
        values: dict = {
            "status": SubscriptionStatus.ACTIVE.value,
            "grace_period_end": None,
            "updated_at": datetime.now(UTC),
        }
        if plan is not None:
            values["plan_type"] = plan.value
        if period is not None:
            start, end = period
            advances = or_(
                Subscription.current_period_start.is_(None),
                Subscription.current_period_start <= start,
            )
            values["current_period_start"] = case((advances, start), else_=Subscription.current_period_start)
            values["current_period_end"] = case((advances, end), else_=Subscription.current_period_end)

        conditions = [Subscription.user_id == user_id, Subscription.stripe_subscription_id.is_not(None)]
        if subscription_ref is not None:
            conditions.append(Subscription.stripe_subscription_id == subscription_ref)

        async with self._session_factory() as session:
            result = await session.execute(
                update(Subscription).where(and_(*conditions)).values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    @store_operation
    async def enter_grace_period(self, user_id: str, grace_end: datetime) -> bool:
        """Move to past_due with a grace deadline, once.

        Only applies when no grace deadline is set yet, so redelivered or
        repeated early failures keep the first deadline.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Subscription)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.grace_period_end.is_(None),
                    Subscription.status.in_(
                        [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
                    ),
                )
                .values(
                    status=SubscriptionStatus.PAST_DUE.value,
                    grace_period_end=grace_end,
                    updated_at=datetime.now(UTC),
                )
            )
            await session.commit()
            return result.rowcount == 1

    @store_operation
    async def downgrade(
        self,
        user_id: str,
        status: SubscriptionStatus,
        *,
        clear_subscription_ref: bool = False,
        only_if_expired_before: datetime | None = None,
        only_if_inconsistent: bool = False,
    ) -> bool:
        """Force the user onto the free plan with the given status.

        ``only_if_expired_before`` turns this into the grace-expiry variant:
        it only applies to past_due rows whose grace deadline has passed, so a
        payment that lands between listing and downgrading wins.

        ``only_if_inconsistent`` repeats the ``list_inconsistent`` filter, so a
        subscription attached after the row was listed is left alone.
        """
        values: dict = {
            "plan_type": PlanType.FREE.value,
            "status": status.value,
            "grace_period_end": None,
            "updated_at": datetime.now(UTC),
        }
        if clear_subscription_ref:
            values["stripe_subscription_id"] = None

        stmt = update(Subscription).where(Subscription.user_id == user_id)
        if only_if_expired_before is not None:
            stmt = stmt.where(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.grace_period_end < only_if_expired_before,
            )
        if only_if_inconsistent:
            stmt = stmt.where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.plan_type != PlanType.FREE.value,
                Subscription.stripe_subscription_id.is_(None),
            )

        async with self._session_factory() as session:
            result = await session.execute(stmt.values(**values))
            await session.commit()
            return result.rowcount == 1

    @store_operation
    async def list_expired_grace_periods(self, now: datetime) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription.user_id).where(
                    Subscription.status == SubscriptionStatus.PAST_DUE.value,
                    Subscription.grace_period_end.is_not(None),
                    Subscription.grace_period_end < now,
                )
            )
            return list(result.scalars().all())

    @store_operation
    async def list_stale_active(self, older_than: datetime) -> list[SubscriptionSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription).where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.updated_at < older_than,
                )
            )
            return [_snapshot(row) for row in result.scalars().all()]

    @store_operation
    async def list_inconsistent(self) -> list[SubscriptionSnapshot]:
        """Active paid subscriptions with no Stripe subscription behind them."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription).where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.plan_type != PlanType.FREE.value,
                    Subscription.stripe_subscription_id.is_(None),
                )
            )
            return [_snapshot(row) for row in result.scalars().all()]

    @store_operation
    async def list_with_subscription_ref(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription.user_id).where(Subscription.stripe_subscription_id.is_not(None))
            )
            return list(result.scalars().all())

    # ── Usage counters ──────────────────────────────────────────────

    @store_operation
    async def get_usage_count(self, user_id: str, tool_name: str, period_start: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UsageCounter.usage_count).where(
                    UsageCounter.user_id == user_id,
                    UsageCounter.tool_name == tool_name,
                    UsageCounter.period_start == period_start,
                )
            )
            count = result.scalar_one_or_none()
            return count or 0

    @store_operation
    async def increment_usage(self, user_id: str, tool_name: str, period_start: datetime) -> None:
        now = datetime.now(UTC)
        stmt = self._insert(UsageCounter).values(
            user_id=user_id,
            tool_name=tool_name,
            period_start=period_start,
            usage_count=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UsageCounter.user_id, UsageCounter.tool_name, UsageCounter.period_start],
            set_={"usage_count": UsageCounter.usage_count + 1, "updated_at": now},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    @store_operation
    async def usage_for_period(
        self,
        user_id: str,
        period_start: datetime,
        exclude: frozenset[str] | set[str] = frozenset(),
    ) -> dict[str, int]:
        stmt = select(UsageCounter.tool_name, UsageCounter.usage_count).where(
            UsageCounter.user_id == user_id,
            UsageCounter.period_start == period_start,
        )
        if exclude:
            stmt = stmt.where(UsageCounter.tool_name.not_in(list(exclude)))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return {tool: count for tool, count in result.all()}

    # ── Trial balances ──────────────────────────────────────────────

    @store_operation
    async def get_trial(self, user_id: str) -> TrialSnapshot | None:
        async with self._session_factory() as session:
            result = await session.execute(select(TrialBalance).where(TrialBalance.user_id == user_id))
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return TrialSnapshot(row.user_id, row.uses_remaining, dict(row.tools_used or {}))

    @store_operation
    async def get_or_create_trial(self, user_id: str, initial_uses: int) -> TrialSnapshot:
        now = datetime.now(UTC)
        stmt = (
            self._insert(TrialBalance)
            .values(
                user_id=user_id,
                uses_remaining=initial_uses,
                tools_used={},
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[TrialBalance.user_id])
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
            result = await session.execute(select(TrialBalance).where(TrialBalance.user_id == user_id))
            row = result.scalar_one()
            return TrialSnapshot(row.user_id, row.uses_remaining, dict(row.tools_used or {}))

    @store_operation
    async def consume_trial_use(self, user_id: str, tool_name: str) -> bool:
        """Spend one trial use; False when the balance is missing or already zero."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(TrialBalance)
                .where(TrialBalance.user_id == user_id, TrialBalance.uses_remaining > 0)
                .values(uses_remaining=TrialBalance.uses_remaining - 1, updated_at=datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False

            # Breakdown is informational; the row lock (PostgreSQL) keeps it exact
            row = (
                await session.execute(
                    select(TrialBalance).where(TrialBalance.user_id == user_id).with_for_update()
                )
            ).scalar_one()
            tools_used = dict(row.tools_used or {})
            tools_used[tool_name] = tools_used.get(tool_name, 0) + 1
            row.tools_used = tools_used
            await session.commit()
            return True

    # ── Webhook ledger ──────────────────────────────────────────────

    @store_operation
    async def claim_webhook_event(self, event_id: str, event_type: str) -> bool:
        """Return True if the event is new (claimed), False if already seen."""
        async with self._session_factory() as session:
            try:
                session.add(StripeWebhookEvent(event_id=event_id, event_type=event_type))
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False
