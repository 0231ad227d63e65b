"""Service for locally-initiated subscription actions (trial start, cancellation)."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..domain.errors import (
    ConfigurationError,
    DuplicateSubscription,
    StaleTransition,
    SubscriptionNotFound,
    TrialUnavailable,
)
from ..domain.models import NotificationKind, Subscription, SubscriptionState
from ..domain.ports.persistence import PersistenceGateway
from ..domain.transitions import AccessEnd, EventKind, transition_for
from .customer_registry import CustomerRegistry
from .stripe_service import StripeService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SubscriptionSummary:
    """Read-only projection of a user's billing state for the UI layer."""

    state: Optional[SubscriptionState]
    trial_days_remaining: Optional[int]
    period_end: Optional[datetime]
    has_access: bool
    cancel_at_period_end: bool = False


class SubscriptionService:
    """Service for managing user subscriptions."""

    def __init__(
        self,
        persistence: PersistenceGateway,
        registry: CustomerRegistry,
        stripe_service: StripeService,
        *,
        price_id: Optional[str],
        trial_days: int = 14,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._persistence = persistence
        self._registry = registry
        self._stripe = stripe_service
        self._price_id = price_id
        self._trial_days = trial_days
        self._clock = clock

    def start_trial(self, user_id: str, email: Optional[str] = None) -> Subscription:
        """
        Open a trial for a user who never had a subscription.

        Args:
            user_id: Authenticated user identifier
            email: Optional email forwarded to Stripe

        Returns:
            The user's live subscription (existing one if already started)

        Raises:
            TrialUnavailable: If the user already had a subscription
            ConfigurationError: If no Stripe price is configured
            ProviderUnreachable: If Stripe fails; nothing is stored in that case
        """
        customer = self._persistence.get_customer_by_user(user_id)
        if customer:
            current = self._persistence.get_current_subscription(customer.id)
            if current and current.is_live():
                return current
            if self._persistence.list_subscriptions(customer.id):
                raise TrialUnavailable("Trial already used for this account")

        if not self._price_id:
            raise ConfigurationError("STRIPE_PRICE_ID is not configured")

        external_customer_id = self._registry.get_or_create_customer(user_id, email)
        customer = self._persistence.get_customer_by_user(user_id)
        if customer is None:
            raise RuntimeError(f"Customer for user {user_id} vanished after registration.")

        stripe_sub = self._stripe.create_trial_subscription(
            external_customer_id, self._price_id, self._trial_days
        )
        now = self._clock()
        created = stripe_sub.get("created")
        trial_end = stripe_sub.get("trial_end")
        trial_ends_at = (
            datetime.fromtimestamp(int(trial_end), tz=timezone.utc)
            if trial_end
            else now + timedelta(days=self._trial_days)
        )
        try:
            with self._persistence.transaction() as tx:
                subscription = tx.insert_subscription(
                    customer.id,
                    state=SubscriptionState.TRIAL,
                    trial_ends_at=trial_ends_at,
                    current_period_end=None,
                    external_subscription_id=stripe_sub["id"],
                    last_event_at=int(created) if created else int(now.timestamp()),
                    created_at=now,
                )
                tx.set_current_subscription(customer.id, subscription.id)
                tx.add_notification(user_id, subscription.id, NotificationKind.TRIAL_STARTED, now)
        except DuplicateSubscription:
            # The subscription.created webhook got here first.
            current = self._persistence.get_current_subscription(customer.id)
            if current and current.is_live():
                logger.info("Trial for user %s was already recorded from webhook.", user_id)
                return current
            raise

        logger.info(
            "Started trial %s (%s) for user %s until %s.",
            subscription.id,
            subscription.external_subscription_id,
            user_id,
            subscription.trial_ends_at,
        )
        return subscription

    def get_current_subscription(self, user_id: str) -> Optional[Subscription]:
        customer = self._persistence.get_customer_by_user(user_id)
        if customer is None:
            return None
        return self._persistence.get_current_subscription(customer.id)

    def get_subscription_summary(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionSummary:
        now = now or self._clock()
        subscription = self.get_current_subscription(user_id)
        if subscription is None:
            return SubscriptionSummary(state=None, trial_days_remaining=None, period_end=None, has_access=False)

        trial_days_remaining = None
        if subscription.state is SubscriptionState.TRIAL and subscription.trial_ends_at:
            remaining = (subscription.trial_ends_at - now).total_seconds()
            trial_days_remaining = max(0, math.ceil(remaining / 86400))

        period_end = subscription.current_period_end
        if subscription.state is SubscriptionState.TRIAL:
            period_end = subscription.trial_ends_at
        elif subscription.is_terminal():
            period_end = subscription.access_until

        return SubscriptionSummary(
            state=subscription.state,
            trial_days_remaining=trial_days_remaining,
            period_end=period_end,
            has_access=subscription.has_access(now),
            cancel_at_period_end=subscription.cancel_at_period_end,
        )

    def has_entitlement(self, user_id: str, now: Optional[datetime] = None) -> bool:
        subscription = self.get_current_subscription(user_id)
        return bool(subscription and subscription.has_access(now or self._clock()))

    def cancel_subscription(self, user_id: str) -> Subscription:
        """
        Cancel the user's live subscription.

        A subscription known to Stripe is cancelled at period end there and
        the ``customer.subscription.updated``/``deleted`` webhooks update the
        local state. A trial without a Stripe subscription is cancelled here.

        Raises:
            SubscriptionNotFound: If the user has no live subscription
            ProviderUnreachable: If Stripe fails
        """
        subscription = self.get_current_subscription(user_id)
        if subscription is None or not subscription.is_live():
            raise SubscriptionNotFound("No live subscription to cancel")

        if subscription.external_subscription_id:
            self._stripe.cancel_at_period_end(subscription.external_subscription_id)
            logger.info(
                "Requested cancellation of %s at period end for user %s.",
                subscription.external_subscription_id,
                user_id,
            )
            return subscription

        transition = transition_for(subscription.state, EventKind.SUBSCRIPTION_DELETED)
        if transition is None:
            raise SubscriptionNotFound("Subscription cannot be cancelled in its current state")
        now = self._clock()
        access_until = now
        period_end = subscription.current_period_end
        if transition.access_end is AccessEnd.PERIOD_END and period_end and period_end > now:
            access_until = period_end
        cancelled = replace(
            subscription,
            state=transition.next_state,
            access_until=access_until,
            last_event_at=max(subscription.last_event_at, int(now.timestamp())),
            updated_at=now,
        )
        try:
            with self._persistence.transaction() as tx:
                saved = tx.save_subscription(cancelled, expected_version=subscription.version)
                tx.add_notification(user_id, saved.id, transition.notification, now)
        except StaleTransition:
            logger.warning("Subscription %s changed while cancelling; retry later.", subscription.id)
            raise
        logger.info("Cancelled local trial %s for user %s.", subscription.id, user_id)
        return saved
