from __future__ import annotations

from datetime import datetime
from typing import ContextManager, List, Optional, Protocol

from ..models import (
    Customer,
    Notification,
    NotificationKind,
    Subscription,
    SubscriptionState,
    WebhookEvent,
)


class CustomerRepository(Protocol):
    """Storage for the user to Stripe customer mapping."""

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        ...

    def get_customer_by_user(self, user_id: str) -> Optional[Customer]:
        ...

    def get_customer_by_external_id(self, external_customer_id: str) -> Optional[Customer]:
        ...

    def insert_customer_if_absent(
        self, user_id: str, external_customer_id: str, created_at: datetime
    ) -> Customer:
        ...


class WebhookEventRepository(Protocol):
    """Append-only ledger of inbound Stripe events."""

    def insert_event_if_absent(
        self, event_id: str, event_type: str, raw_payload: str, received_at: datetime
    ) -> bool:
        ...

    def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        ...

    def list_unprocessed_events(self, limit: int) -> List[WebhookEvent]:
        ...


class SubscriptionRepository(Protocol):
    """Read access to subscription records."""

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        ...

    def get_current_subscription(self, customer_id: int) -> Optional[Subscription]:
        ...

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        ...

    def list_subscriptions(self, customer_id: int) -> List[Subscription]:
        ...

    def list_expired_trials(self, now: datetime) -> List[Subscription]:
        ...


class NotificationRepository(Protocol):
    """Outbox of notifications consumed by the UI layer."""

    def list_notifications(self, user_id: str, include_dismissed: bool = False) -> List[Notification]:
        ...

    def dismiss_notification(self, user_id: str, notification_id: int, dismissed_at: datetime) -> bool:
        ...


class UnitOfWork(
    CustomerRepository,
    WebhookEventRepository,
    SubscriptionRepository,
    Protocol,
):
    """Operations available inside one atomic storage transaction."""

    def mark_event_processed(self, event_id: str, processed_at: datetime) -> None:
        ...

    def insert_subscription(
        self,
        customer_id: int,
        *,
        state: SubscriptionState,
        trial_ends_at: Optional[datetime],
        current_period_end: Optional[datetime],
        external_subscription_id: Optional[str],
        last_event_at: int,
        created_at: datetime,
    ) -> Subscription:
        ...

    def save_subscription(self, subscription: Subscription, *, expected_version: int) -> Subscription:
        ...

    def set_current_subscription(self, customer_id: int, subscription_id: int) -> None:
        ...

    def add_notification(
        self,
        user_id: str,
        subscription_id: Optional[int],
        kind: NotificationKind,
        created_at: datetime,
    ) -> None:
        ...


class PersistenceGateway(
    CustomerRepository,
    WebhookEventRepository,
    SubscriptionRepository,
    NotificationRepository,
    Protocol,
):
    """Composite gateway combining every persistence concern used by the app."""

    def transaction(self) -> ContextManager[UnitOfWork]:
        ...

    def close(self) -> None:
        ...
