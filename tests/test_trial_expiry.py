"""Tests for the trial expiry sweep."""

import asyncio

import pytest

from conftest import START, stripe_event, to_envelope
from subsync.domain.errors import ProviderUnreachable
from subsync.domain.models import NotificationKind, SubscriptionState
from subsync.services.event_dispatcher import DispatchOutcome, EventDispatcher
from subsync.services.event_ledger import EventLedger
from subsync.services.trial_expiry import TrialExpiryEnforcer

T0 = int(START.timestamp())


@pytest.fixture
def enforcer(persistence, stripe_service, clock):
    return TrialExpiryEnforcer(persistence, stripe_service, interval_seconds=3600, clock=clock)


@pytest.fixture
def dispatcher(persistence, clock):
    return EventDispatcher(persistence, EventLedger(persistence, clock=clock), clock=clock)


def test_sweep_expires_unpaid_trial(enforcer, persistence, stripe_service, clock, seed_subscription):
    seeded = seed_subscription(SubscriptionState.TRIAL)
    clock.advance(days=15)

    summary = enforcer.sweep()

    assert (summary.scanned, summary.expired, summary.skipped, summary.failures) == (1, 1, 0, 0)
    expired = persistence.get_subscription(seeded.id)
    assert expired.state is SubscriptionState.EXPIRED
    assert expired.version == 2
    assert expired.access_until == clock()
    assert expired.trial_ends_at == seeded.trial_ends_at
    stripe_service.has_payment_on_file.assert_called_once_with("cus_123", "sub_123")
    kinds = [n.kind for n in persistence.list_notifications("user-1")]
    assert kinds == [NotificationKind.TRIAL_EXPIRED]


def test_sweep_is_idempotent(enforcer, persistence, clock, seed_subscription):
    seeded = seed_subscription(SubscriptionState.TRIAL)
    clock.advance(days=15)

    enforcer.sweep()
    again = enforcer.sweep()

    assert again.scanned == 0
    assert persistence.get_subscription(seeded.id).version == 2
    assert len(persistence.list_notifications("user-1")) == 1


def test_running_trial_is_not_selected(enforcer, clock, seed_subscription):
    seed_subscription(SubscriptionState.TRIAL)
    clock.advance(days=13)

    assert enforcer.sweep().scanned == 0


def test_trial_with_payment_method_is_left_for_stripe(enforcer, persistence, stripe_service, clock, seed_subscription):
    seeded = seed_subscription(SubscriptionState.TRIAL)
    stripe_service.has_payment_on_file.return_value = True
    clock.advance(days=15)

    summary = enforcer.sweep()

    assert summary.skipped == 1
    assert persistence.get_subscription(seeded.id).state is SubscriptionState.TRIAL


def test_provider_failure_skips_customer_until_next_run(enforcer, persistence, stripe_service, clock, seed_subscription):
    seeded = seed_subscription(SubscriptionState.TRIAL)
    stripe_service.has_payment_on_file.side_effect = ProviderUnreachable("timeout")
    clock.advance(days=15)

    summary = enforcer.sweep()

    assert summary.failures == 1
    assert persistence.get_subscription(seeded.id).state is SubscriptionState.TRIAL

    stripe_service.has_payment_on_file.side_effect = None
    assert enforcer.sweep().expired == 1


def test_webhook_winning_the_race_is_kept(enforcer, dispatcher, persistence, stripe_service, clock, seed_subscription):
    seeded = seed_subscription(SubscriptionState.TRIAL)
    clock.advance(days=15)
    paid = to_envelope(
        stripe_event(
            "evt_paid",
            "invoice.paid",
            clock.timestamp() - 60,
            {"customer": "cus_123", "subscription": "sub_123", "amount_paid": 1000},
        )
    )

    def _converted_meanwhile(customer_id, subscription_id):
        assert dispatcher.receive(paid).outcome is DispatchOutcome.APPLIED
        return False

    stripe_service.has_payment_on_file.side_effect = _converted_meanwhile

    summary = enforcer.sweep()

    assert summary.expired == 0
    assert summary.skipped == 1
    assert persistence.get_subscription(seeded.id).state is SubscriptionState.ACTIVE


def test_stale_invoice_after_expiry_is_ignored(enforcer, dispatcher, persistence, clock, seed_subscription):
    seeded = seed_subscription(SubscriptionState.TRIAL)
    clock.advance(days=15)
    enforcer.sweep()
    late = to_envelope(
        stripe_event(
            "evt_late",
            "invoice.paid",
            clock.timestamp() - 3600,
            {"customer": "cus_123", "subscription": "sub_123", "amount_paid": 1000},
        )
    )

    result = dispatcher.receive(late)

    assert result.outcome is DispatchOutcome.STALE
    assert persistence.get_subscription(seeded.id).state is SubscriptionState.EXPIRED
    assert persistence.get_event("evt_late").is_processed


def test_stop_request_interrupts_between_customers(enforcer, clock, seed_subscription):
    seed_subscription(SubscriptionState.TRIAL)
    clock.advance(days=15)
    enforcer.request_stop()

    summary = enforcer.sweep()

    assert summary.interrupted is True
    assert summary.scanned == 0


@pytest.mark.asyncio
async def test_background_loop_starts_and_stops(enforcer, persistence, clock, seed_subscription):
    seeded = seed_subscription(SubscriptionState.TRIAL)
    clock.advance(days=15)

    await enforcer.start()
    assert enforcer.is_running
    for _ in range(50):
        if persistence.get_subscription(seeded.id).state is SubscriptionState.EXPIRED:
            break
        await asyncio.sleep(0.05)
    await enforcer.stop()

    assert not enforcer.is_running
    assert persistence.get_subscription(seeded.id).state is SubscriptionState.EXPIRED
