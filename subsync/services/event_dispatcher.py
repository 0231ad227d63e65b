"""Applies verified Stripe events to the subscription state store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..domain.errors import DuplicateEvent, StaleTransition, UnknownEventType
from ..domain.models import (
    LIVE_STATES,
    Customer,
    EventEnvelope,
    NotificationKind,
    RecordOutcome,
    Subscription,
    SubscriptionState,
)
from ..domain.ports.persistence import PersistenceGateway, UnitOfWork
from ..domain.transitions import (
    AccessEnd,
    EventKind,
    Transition,
    state_from_provider_status,
    transition_for,
    transition_to,
)
from .event_ledger import EventLedger

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchOutcome(str, Enum):
    APPLIED = "ok"
    DUPLICATE = "duplicate_ignored"
    STALE = "stale_ignored"
    NO_TRANSITION = "no_transition"
    IGNORED = "ignored"
    UNKNOWN_CUSTOMER = "unknown_customer"


@dataclass(slots=True)
class DispatchResult:
    outcome: DispatchOutcome
    subscription: Optional[Subscription] = None


Handler = Callable[[UnitOfWork, Customer, Optional[Subscription], EventEnvelope, datetime], DispatchResult]


class EventDispatcher:
    """Routes each event type to its transition handler.

    Every event is handled inside a single storage transaction: the state
    write, its notification and the ledger's ``processed_at`` commit together
    or not at all. A failure leaves the event unprocessed so Stripe's
    redelivery retries it.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        ledger: EventLedger,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._persistence = persistence
        self._ledger = ledger
        self._clock = clock
        self._handlers: Dict[EventKind, Handler] = {
            EventKind.SUBSCRIPTION_CREATED: self._on_subscription_created,
            EventKind.INVOICE_PAID: self._on_invoice_paid,
            EventKind.INVOICE_PAYMENT_FAILED: self._on_invoice_payment_failed,
            EventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }

    def receive(self, envelope: EventEnvelope) -> DispatchResult:
        """Record the event in the ledger, then apply it unless already done."""
        outcome = self._ledger.record_if_new(envelope.event_id, envelope.type, envelope.raw_payload)
        if outcome is RecordOutcome.ALREADY_SEEN:
            logger.info("Stripe duplicate webhook ignored: %s", envelope.event_id)
            return DispatchResult(DispatchOutcome.DUPLICATE)
        return self.handle_event(envelope)

    def handle_event(self, envelope: EventEnvelope) -> DispatchResult:
        now = self._clock()
        try:
            with self._persistence.transaction() as tx:
                self._claim(tx, envelope)
                try:
                    kind = _event_kind(envelope)
                except UnknownEventType as exc:
                    logger.info("Stripe webhook %s acknowledged: %s", envelope.event_id, exc)
                    result = DispatchResult(DispatchOutcome.IGNORED)
                else:
                    result = self._apply(tx, kind, envelope, now)
                tx.mark_event_processed(envelope.event_id, now)
        except DuplicateEvent:
            return DispatchResult(DispatchOutcome.DUPLICATE)

        logger.info(
            "Stripe webhook %s (%s): %s",
            envelope.event_id,
            envelope.type,
            result.outcome.name.lower(),
        )
        return result

    @staticmethod
    def _claim(tx: UnitOfWork, envelope: EventEnvelope) -> None:
        event = tx.get_event(envelope.event_id)
        if event is None:
            raise LookupError(f"Event {envelope.event_id} is not in the ledger.")
        if event.is_processed:
            # Another worker finished this delivery first.
            raise DuplicateEvent(envelope.event_id)

    def _apply(self, tx: UnitOfWork, kind: EventKind, envelope: EventEnvelope, now: datetime) -> DispatchResult:
        obj = envelope.data_object
        external_customer_id = _extract_customer_id(obj)
        customer = tx.get_customer_by_external_id(external_customer_id) if external_customer_id else None
        if customer is None:
            logger.warning(
                "Cannot find customer %s for Stripe event %s",
                external_customer_id,
                envelope.event_id,
            )
            return DispatchResult(DispatchOutcome.UNKNOWN_CUSTOMER)

        current = (
            tx.get_subscription(customer.current_subscription_id)
            if customer.current_subscription_id
            else None
        )

        if current is not None and envelope.created < current.last_event_at:
            logger.warning(
                "Stale %s for subscription %s discarded (event at %s, state from %s).",
                envelope.type,
                current.id,
                envelope.created,
                current.last_event_at,
            )
            return DispatchResult(DispatchOutcome.STALE, current)

        if current is None or current.is_terminal():
            reopened = self._reopen_from_event(tx, customer, current, kind, envelope, now)
            if reopened is not None:
                return reopened

        if current is not None and current.is_terminal() and kind is not EventKind.SUBSCRIPTION_CREATED:
            logger.warning(
                "Anomaly: %s received for %s subscription %s; no transition.",
                envelope.type,
                current.state.value,
                current.id,
            )
            return DispatchResult(DispatchOutcome.NO_TRANSITION, current)

        return self._handlers[kind](tx, customer, current, envelope, now)

    # Handlers ---------------------------------------------------------------
    def _on_invoice_paid(
        self,
        tx: UnitOfWork,
        customer: Customer,
        current: Optional[Subscription],
        envelope: EventEnvelope,
        now: datetime,
    ) -> DispatchResult:
        obj = envelope.data_object
        if not self._is_for_current(current, _extract_invoice_subscription_id(obj), envelope):
            return DispatchResult(DispatchOutcome.NO_TRANSITION, current)

        if current.state is SubscriptionState.TRIAL and _amount_paid(obj) == 0:
            # Stripe issues a zero-amount invoice when a trial starts.
            return DispatchResult(DispatchOutcome.NO_TRANSITION, current)

        return self._transition(
            tx,
            customer,
            current,
            transition_for(current.state, EventKind.INVOICE_PAID),
            envelope,
            now,
            current_period_end=_extract_invoice_period_end(obj) or current.current_period_end,
            external_subscription_id=current.external_subscription_id or _extract_invoice_subscription_id(obj),
        )

    def _on_invoice_payment_failed(
        self,
        tx: UnitOfWork,
        customer: Customer,
        current: Optional[Subscription],
        envelope: EventEnvelope,
        now: datetime,
    ) -> DispatchResult:
        if not self._is_for_current(current, _extract_invoice_subscription_id(envelope.data_object), envelope):
            return DispatchResult(DispatchOutcome.NO_TRANSITION, current)
        return self._transition(
            tx,
            customer,
            current,
            transition_for(current.state, EventKind.INVOICE_PAYMENT_FAILED),
            envelope,
            now,
        )

    def _on_subscription_deleted(
        self,
        tx: UnitOfWork,
        customer: Customer,
        current: Optional[Subscription],
        envelope: EventEnvelope,
        now: datetime,
    ) -> DispatchResult:
        obj = envelope.data_object
        if not self._is_for_current(current, obj.get("id"), envelope):
            return DispatchResult(DispatchOutcome.NO_TRANSITION, current)
        return self._transition(
            tx,
            customer,
            current,
            transition_for(current.state, EventKind.SUBSCRIPTION_DELETED),
            envelope,
            now,
            current_period_end=_extract_period_end(obj) or current.current_period_end,
        )

    def _on_subscription_updated(
        self,
        tx: UnitOfWork,
        customer: Customer,
        current: Optional[Subscription],
        envelope: EventEnvelope,
        now: datetime,
    ) -> DispatchResult:
        obj = envelope.data_object
        external_id = obj.get("id")
        if not self._is_for_current(current, external_id, envelope):
            return DispatchResult(DispatchOutcome.NO_TRANSITION, current)

        fields: Dict[str, Any] = {
            "current_period_end": _extract_period_end(obj) or current.current_period_end,
            "cancel_at_period_end": bool(obj.get("cancel_at_period_end", current.cancel_at_period_end)),
            "external_subscription_id": current.external_subscription_id or external_id,
        }

        target = state_from_provider_status(obj.get("status"))
        if target is not None and target is not current.state:
            transition = transition_to(current.state, target)
            if transition is not None:
                return self._transition(tx, customer, current, transition, envelope, now, **fields)
            logger.warning(
                "Ignoring Stripe status %s for %s subscription %s.",
                obj.get("status"),
                current.state.value,
                current.id,
            )

        if all(getattr(current, name) == value for name, value in fields.items()):
            return DispatchResult(DispatchOutcome.NO_TRANSITION, current)

        notification = None
        if fields["cancel_at_period_end"] and not current.cancel_at_period_end:
            notification = NotificationKind.CANCELLATION_SCHEDULED
        return self._write(tx, customer, current, envelope, now, notification=notification, **fields)

    def _on_subscription_created(
        self,
        tx: UnitOfWork,
        customer: Customer,
        current: Optional[Subscription],
        envelope: EventEnvelope,
        now: datetime,
    ) -> DispatchResult:
        obj = envelope.data_object
        external_id = obj.get("id")
        if external_id:
            known = tx.get_subscription_by_external_id(external_id)
            if known is not None and (current is None or known.id != current.id):
                logger.info("Stripe subscription %s is already tracked as %s.", external_id, known.id)
                return DispatchResult(DispatchOutcome.NO_TRANSITION, current)

        if current is not None and current.is_live():
            return self._on_subscription_updated(tx, customer, current, envelope, now)

        # No live subscription: this is a new checkout (first one or reactivation).
        state = state_from_provider_status(obj.get("status"))
        if state not in LIVE_STATES:
            logger.info("Stripe subscription %s created with status %s; waiting for activation.", external_id, obj.get("status"))
            return DispatchResult(DispatchOutcome.NO_TRANSITION, current)

        return self._open_subscription(
            tx,
            customer,
            envelope,
            now,
            state=state,
            external_subscription_id=external_id,
            trial_ends_at=_from_timestamp(obj.get("trial_end")) if state is SubscriptionState.TRIAL else None,
            current_period_end=_extract_period_end(obj),
        )

    # Helpers ----------------------------------------------------------------
    def _reopen_from_event(
        self,
        tx: UnitOfWork,
        customer: Customer,
        current: Optional[Subscription],
        kind: EventKind,
        envelope: EventEnvelope,
        now: datetime,
    ) -> Optional[DispatchResult]:
        """Open a row for a Stripe subscription first seen on a payment or update.

        Stripe creates a checkout subscription as ``incomplete`` and only
        reports it live on the following ``invoice.paid`` and
        ``customer.subscription.updated`` events, in either order.
        """
        obj = envelope.data_object
        if kind is EventKind.INVOICE_PAID:
            external_id = _extract_invoice_subscription_id(obj)
            state = SubscriptionState.ACTIVE if _amount_paid(obj) else None
            trial_ends_at = None
            period_end = _extract_invoice_period_end(obj)
        elif kind is EventKind.SUBSCRIPTION_UPDATED:
            external_id = obj.get("id")
            state = state_from_provider_status(obj.get("status"))
            trial_ends_at = _from_timestamp(obj.get("trial_end")) if state is SubscriptionState.TRIAL else None
            period_end = _extract_period_end(obj)
        else:
            return None

        if not external_id or state not in LIVE_STATES:
            return None
        if current is not None and external_id == current.external_subscription_id:
            return None
        if tx.get_subscription_by_external_id(external_id) is not None:
            return None

        return self._open_subscription(
            tx,
            customer,
            envelope,
            now,
            state=state,
            external_subscription_id=external_id,
            trial_ends_at=trial_ends_at,
            current_period_end=period_end,
        )

    def _open_subscription(
        self,
        tx: UnitOfWork,
        customer: Customer,
        envelope: EventEnvelope,
        now: datetime,
        *,
        state: SubscriptionState,
        external_subscription_id: Optional[str],
        trial_ends_at: Optional[datetime],
        current_period_end: Optional[datetime],
    ) -> DispatchResult:
        created = tx.insert_subscription(
            customer.id,
            state=state,
            trial_ends_at=trial_ends_at,
            current_period_end=current_period_end,
            external_subscription_id=external_subscription_id,
            last_event_at=envelope.created,
            created_at=now,
        )
        tx.set_current_subscription(customer.id, created.id)
        kind = (
            NotificationKind.TRIAL_STARTED
            if state is SubscriptionState.TRIAL
            else NotificationKind.SUBSCRIPTION_STARTED
        )
        tx.add_notification(customer.user_id, created.id, kind, now)
        logger.info("Opened %s subscription %s for customer %s.", state.value, created.id, customer.id)
        return DispatchResult(DispatchOutcome.APPLIED, created)

    def _is_for_current(
        self,
        current: Optional[Subscription],
        external_subscription_id: Optional[str],
        envelope: EventEnvelope,
    ) -> bool:
        if current is None:
            logger.warning("Stripe event %s for a customer without subscription.", envelope.event_id)
            return False
        if (
            external_subscription_id
            and current.external_subscription_id
            and external_subscription_id != current.external_subscription_id
        ):
            logger.warning(
                "Stripe event %s targets subscription %s, current is %s; ignored.",
                envelope.event_id,
                external_subscription_id,
                current.external_subscription_id,
            )
            return False
        return True

    def _transition(
        self,
        tx: UnitOfWork,
        customer: Customer,
        current: Subscription,
        transition: Optional[Transition],
        envelope: EventEnvelope,
        now: datetime,
        **fields: Any,
    ) -> DispatchResult:
        if transition is None:
            logger.info(
                "No transition for %s in state %s (subscription %s).",
                envelope.type,
                current.state.value,
                current.id,
            )
            return DispatchResult(DispatchOutcome.NO_TRANSITION, current)

        period_end = fields.get("current_period_end", current.current_period_end)
        if transition.access_end is AccessEnd.NOW:
            fields["access_until"] = now
        elif transition.access_end is AccessEnd.PERIOD_END:
            fields["access_until"] = period_end if period_end and period_end > now else now

        result = self._write(
            tx,
            customer,
            current,
            envelope,
            now,
            notification=transition.notification,
            state=transition.next_state,
            **fields,
        )
        if result.outcome is DispatchOutcome.APPLIED:
            logger.info(
                "Subscription %s: %s -> %s on %s.",
                current.id,
                current.state.value,
                transition.next_state.value,
                envelope.type,
            )
        return result

    def _write(
        self,
        tx: UnitOfWork,
        customer: Customer,
        current: Subscription,
        envelope: EventEnvelope,
        now: datetime,
        *,
        notification: Optional[NotificationKind],
        **fields: Any,
    ) -> DispatchResult:
        changed = replace(current, last_event_at=envelope.created, updated_at=now, **fields)
        try:
            saved = tx.save_subscription(changed, expected_version=current.version)
        except StaleTransition as exc:
            logger.warning("Discarded %s for subscription %s: %s", envelope.type, current.id, exc)
            return DispatchResult(DispatchOutcome.STALE, current)
        if notification is not None:
            tx.add_notification(customer.user_id, saved.id, notification, now)
        return DispatchResult(DispatchOutcome.APPLIED, saved)


def _event_kind(envelope: EventEnvelope) -> EventKind:
    kind = EventKind.parse(envelope.type)
    if kind is None:
        raise UnknownEventType(f"no handler for {envelope.type}")
    return kind


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _extract_customer_id(obj: Dict[str, Any]) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return str(customer) if customer else None


def _extract_period_end(stripe_sub: Dict[str, Any]) -> Optional[datetime]:
    period_end = stripe_sub.get("current_period_end")
    if period_end is None:
        items = (stripe_sub.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return _from_timestamp(period_end)


def _extract_invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if subscription is None:
        details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return str(subscription) if subscription else None


def _extract_invoice_period_end(invoice: Dict[str, Any]) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    return _from_timestamp((lines[0].get("period") or {}).get("end"))


def _amount_paid(invoice: Dict[str, Any]) -> Optional[int]:
    value = invoice.get("amount_paid")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
