"""Typed records for the Stripe payloads the reconciler reads.

Stripe objects are decoded here, once, at the boundary. Downstream code only
sees these records and the handful of fields they carry. Both the classic
API shape (period bounds on the subscription, ``invoice.subscription``) and
the newer one (period bounds on subscription items,
``invoice.parent.subscription_details``) are accepted.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    IGNORED = "ignored"


STRIPE_EVENT_KINDS: dict[str, EventKind] = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
}


class ProviderSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_ref: str
    customer_ref: str | None = None
    status: str
    price_ref: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None

    @property
    def period(self) -> tuple[datetime, datetime | None] | None:
        if self.current_period_start is None:
            return None
        return (self.current_period_start, self.current_period_end)


class InvoiceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    invoice_ref: str | None = None
    customer_ref: str | None = None
    subscription_ref: str | None = None
    attempt_count: int = 0
    amount_paid: int = 0
    price_ref: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None

    @property
    def period(self) -> tuple[datetime, datetime | None] | None:
        if self.period_start is None:
            return None
        return (self.period_start, self.period_end)


class BillingEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    kind: EventKind
    subscription: ProviderSubscription | None = None
    invoice: InvoiceRecord | None = None

    @property
    def customer_ref(self) -> str | None:
        if self.subscription is not None:
            return self.subscription.customer_ref
        if self.invoice is not None:
            return self.invoice.customer_ref
        return None


# ── Decoding helpers ────────────────────────────────────────────────


def _as_mapping(obj: Any) -> Mapping:
    """View a dict or StripeObject as a read-only mapping."""
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise ValueError(f"Cannot decode Stripe payload of type {type(obj).__name__}")


def _ref(value: Any) -> str | None:
    """Stripe references are IDs, or expanded objects carrying an ``id``."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _as_mapping(value).get("id")


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _first(container: Any) -> Mapping:
    data = _as_mapping(container).get("data") or []
    return _as_mapping(data[0]) if data else {}


def decode_subscription(obj: Any) -> ProviderSubscription:
    data = _as_mapping(obj)
    item = _first(data.get("items"))
    price = _as_mapping(item.get("price"))

    subscription_ref = data.get("id")
    if not subscription_ref:
        raise ValueError("Stripe subscription payload has no id")

    return ProviderSubscription(
        subscription_ref=subscription_ref,
        customer_ref=_ref(data.get("customer")),
        status=data.get("status") or "",
        price_ref=price.get("id"),
        current_period_start=_timestamp(data.get("current_period_start") or item.get("current_period_start")),
        current_period_end=_timestamp(data.get("current_period_end") or item.get("current_period_end")),
    )


def decode_invoice(obj: Any) -> InvoiceRecord:
    data = _as_mapping(obj)
    line = _first(data.get("lines"))
    line_period = _as_mapping(line.get("period"))

    subscription_ref = _ref(data.get("subscription"))
    if subscription_ref is None:
        details = _as_mapping(_as_mapping(data.get("parent")).get("subscription_details"))
        subscription_ref = _ref(details.get("subscription"))

    price_ref = _ref(line.get("price"))
    if price_ref is None:
        price_details = _as_mapping(_as_mapping(line.get("pricing")).get("price_details"))
        price_ref = _ref(price_details.get("price"))

    return InvoiceRecord(
        invoice_ref=data.get("id"),
        customer_ref=_ref(data.get("customer")),
        subscription_ref=subscription_ref,
        attempt_count=int(data.get("attempt_count") or 0),
        amount_paid=int(data.get("amount_paid") or 0),
        price_ref=price_ref,
        period_start=_timestamp(line_period.get("start")),
        period_end=_timestamp(line_period.get("end")),
    )


def decode_event(raw: Any) -> BillingEvent:
    """Decode a verified Stripe event into a BillingEvent.

    Raises ValueError (pydantic's ValidationError included) for payloads that
    lack the fields their kind requires.
    """
    event = _as_mapping(raw)
    event_type = event.get("type") or ""
    kind = STRIPE_EVENT_KINDS.get(event_type, EventKind.IGNORED)
    obj = _as_mapping(event.get("data")).get("object")

    subscription = None
    invoice = None
    if kind in (
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
    ):
        subscription = decode_subscription(obj)
    elif kind in (EventKind.INVOICE_PAYMENT_SUCCEEDED, EventKind.INVOICE_PAYMENT_FAILED):
        invoice = decode_invoice(obj)

    return BillingEvent(
        event_id=event.get("id") or "",
        event_type=event_type,
        kind=kind,
        subscription=subscription,
        invoice=invoice,
    )
