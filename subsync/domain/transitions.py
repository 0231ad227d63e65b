"""Subscription state machine: which Stripe event moves which state where."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from .models import NotificationKind, SubscriptionState


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"

    @classmethod
    def parse(cls, event_type: str) -> Optional["EventKind"]:
        try:
            return cls(event_type)
        except ValueError:
            return None


class AccessEnd(str, Enum):
    """When entitlement stops once a subscription turns terminal."""

    KEEP = "keep"
    NOW = "now"
    PERIOD_END = "period_end"


@dataclass(frozen=True, slots=True)
class Transition:
    next_state: SubscriptionState
    notification: NotificationKind
    access_end: AccessEnd = AccessEnd.KEEP


_S = SubscriptionState
_E = EventKind

TRANSITIONS: Dict[Tuple[SubscriptionState, EventKind], Transition] = {
    (_S.TRIAL, _E.INVOICE_PAID): Transition(_S.ACTIVE, NotificationKind.TRIAL_CONVERTED),
    (_S.TRIAL, _E.SUBSCRIPTION_DELETED): Transition(
        _S.CANCELLED, NotificationKind.TRIAL_CANCELLED, AccessEnd.NOW
    ),
    (_S.ACTIVE, _E.INVOICE_PAYMENT_FAILED): Transition(_S.PAST_DUE, NotificationKind.PAYMENT_FAILED),
    (_S.PAST_DUE, _E.INVOICE_PAID): Transition(_S.ACTIVE, NotificationKind.PAYMENT_RECOVERED),
    (_S.PAST_DUE, _E.SUBSCRIPTION_DELETED): Transition(
        _S.CANCELLED, NotificationKind.SUBSCRIPTION_CANCELLED, AccessEnd.NOW
    ),
    (_S.ACTIVE, _E.SUBSCRIPTION_DELETED): Transition(
        _S.CANCELLED, NotificationKind.SUBSCRIPTION_CANCELLED, AccessEnd.PERIOD_END
    ),
    # Renewal keeps the state but refreshes the period.
    (_S.ACTIVE, _E.INVOICE_PAID): Transition(_S.ACTIVE, NotificationKind.SUBSCRIPTION_RENEWED),
}

TRIAL_EXPIRY = Transition(_S.EXPIRED, NotificationKind.TRIAL_EXPIRED, AccessEnd.NOW)

# State changes reachable through a provider status report, keyed by edge.
EDGE_TRANSITIONS: Dict[Tuple[SubscriptionState, SubscriptionState], Transition] = {
    (current, transition.next_state): transition
    for (current, _kind), transition in TRANSITIONS.items()
    if transition.next_state is not current
}
EDGE_TRANSITIONS[(_S.TRIAL, _S.EXPIRED)] = TRIAL_EXPIRY

PROVIDER_STATUS: Dict[str, SubscriptionState] = {
    "trialing": _S.TRIAL,
    "active": _S.ACTIVE,
    "past_due": _S.PAST_DUE,
    "unpaid": _S.PAST_DUE,
    "canceled": _S.CANCELLED,
    "incomplete_expired": _S.EXPIRED,
}


def transition_for(state: SubscriptionState, kind: EventKind) -> Optional[Transition]:
    return TRANSITIONS.get((state, kind))


def transition_to(state: SubscriptionState, target: SubscriptionState) -> Optional[Transition]:
    return EDGE_TRANSITIONS.get((state, target))


def state_from_provider_status(status: Optional[str]) -> Optional[SubscriptionState]:
    if not status:
        return None
    return PROVIDER_STATUS.get(str(status).strip().lower())
