"""Re-export all models so Base.metadata sees them."""

from toolmeter.db.models.stripe_event import StripeWebhookEvent
from toolmeter.db.models.subscription import Subscription
from toolmeter.db.models.trial_balance import TrialBalance
from toolmeter.db.models.usage_counter import UsageCounter

__all__ = [
    "StripeWebhookEvent",
    "Subscription",
    "TrialBalance",
    "UsageCounter",
]
