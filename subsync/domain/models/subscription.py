"""Subscription domain model tracking a customer's billing state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class SubscriptionState(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


LIVE_STATES = frozenset({SubscriptionState.TRIAL, SubscriptionState.ACTIVE, SubscriptionState.PAST_DUE})
TERMINAL_STATES = frozenset({SubscriptionState.CANCELLED, SubscriptionState.EXPIRED})


@dataclass(slots=True)
class Subscription:
    """
    Subscription record owned by a customer.

    Attributes:
        id: Unique identifier
        customer_id: Reference to Customer
        state: Current lifecycle state
        trial_ends_at: End of the trial window, written once at creation
        current_period_end: End of the paid period reported by Stripe
        external_subscription_id: Stripe subscription ID, once known
        version: Counter bumped on every accepted write
        last_event_at: Unix timestamp of the event that produced the current state
        access_until: When entitlement ends for a terminal subscription
        cancel_at_period_end: Whether Stripe will cancel at the end of the period
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    id: int
    customer_id: int
    state: SubscriptionState
    trial_ends_at: Optional[datetime]
    current_period_end: Optional[datetime]
    external_subscription_id: Optional[str]
    version: int
    last_event_at: int
    access_until: Optional[datetime]
    cancel_at_period_end: bool
    created_at: datetime
    updated_at: datetime

    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def has_access(self, now: datetime) -> bool:
        """Check whether the subscription currently grants entitlements."""
        if self.state is SubscriptionState.TRIAL:
            return self.trial_ends_at is None or now < self.trial_ends_at
        if self.state in (SubscriptionState.ACTIVE, SubscriptionState.PAST_DUE):
            return True
        return self.access_until is not None and now < self.access_until
