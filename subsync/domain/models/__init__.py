"""Domain models for the subsync application."""

from .customer import Customer
from .notification import Notification, NotificationKind
from .subscription import LIVE_STATES, TERMINAL_STATES, Subscription, SubscriptionState
from .webhook_event import EventEnvelope, RecordOutcome, WebhookEvent

__all__ = [
    "Customer",
    "EventEnvelope",
    "LIVE_STATES",
    "Notification",
    "NotificationKind",
    "RecordOutcome",
    "Subscription",
    "SubscriptionState",
    "TERMINAL_STATES",
    "WebhookEvent",
]
