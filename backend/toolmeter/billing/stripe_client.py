"""Thin async wrapper over the Stripe SDK.

Every network call is bounded by ``timeout_seconds``; Stripe errors and
timeouts surface as ``BillingProviderError`` so the reconciler has one
failure type to handle.
"""

import asyncio

import stripe
import structlog

from toolmeter.billing.events import ProviderSubscription, decode_subscription
from toolmeter.core.exceptions import BillingProviderError

logger = structlog.get_logger(__name__)


class StripeBillingClient:
    def __init__(self, secret_key: str, webhook_secret: str = "", timeout_seconds: float = 5.0):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds

    def _configure(self) -> None:
        stripe.api_key = self.secret_key

    async def _call(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except TimeoutError as exc:
            logger.warning("stripe_call_timed_out", operation=operation, timeout_seconds=self.timeout_seconds)
            raise BillingProviderError(f"Stripe {operation} timed out") from exc
        except stripe.StripeError as exc:
            logger.warning("stripe_call_failed", operation=operation, error=str(exc), error_type=type(exc).__name__)
            raise BillingProviderError(f"Stripe {operation} failed: {exc}") from exc

    async def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        self._configure()
        subscription = await self._call(
            "retrieve_subscription",
            stripe.Subscription.retrieve_async(subscription_ref),
        )
        return decode_subscription(subscription)

    def construct_event(self, payload: bytes, signature: str):
        """Verify the webhook signature and parse the event.

        Raises ValueError for malformed payloads and
        stripe.SignatureVerificationError for bad signatures.
        """
        return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)

    async def get_or_create_customer(self, user_id: str, email: str | None) -> str:
        """Find a customer by email, else create one tagged with the user ID."""
        self._configure()
        if email:
            existing = await self._call("list_customers", stripe.Customer.list_async(email=email, limit=1))
            if existing.data:
                return existing.data[0].id

        customer = await self._call(
            "create_customer",
            stripe.Customer.create_async(email=email, metadata={"user_id": user_id}),
        )
        return customer.id

    async def create_checkout_session(
        self,
        *,
        customer_ref: str,
        price_ref: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Create a subscription-mode Checkout session and return its URL."""
        self._configure()
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create_async(
                customer=customer_ref,
                mode="subscription",
                line_items=[{"price": price_ref, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"user_id": user_id},
                subscription_data={"metadata": {"user_id": user_id}},
            ),
        )
        return session.url
