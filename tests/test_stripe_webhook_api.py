"""End-to-end webhook tests through the FastAPI app."""

import json
from unittest.mock import patch

import pytest
from httpx import AsyncClient

from conftest import sign_payload, stripe_event
from subsync.domain.errors import StorageUnavailable
from subsync.domain.models import SubscriptionState


async def _post_event(client: AsyncClient, clock, event, *, timestamp=None, secret=None):
    body = json.dumps(event).encode("utf-8")
    kwargs = {"secret": secret} if secret else {}
    header = sign_payload(body, timestamp if timestamp is not None else clock.timestamp(), **kwargs)
    return await client.post(
        "/api/stripe/webhook",
        content=body,
        headers={"stripe-signature": header, "content-type": "application/json"},
    )


def _paid_invoice(event_id, created):
    return stripe_event(
        event_id,
        "invoice.paid",
        created,
        {"customer": "cus_123", "subscription": "sub_123", "amount_paid": 1900},
    )


def _current(persistence):
    customer = persistence.get_customer_by_user("user-1")
    return persistence.get_current_subscription(customer.id)


@pytest.mark.asyncio
async def test_trial_conversion_with_redelivery(client: AsyncClient, clock, persistence, seed_subscription):
    seed_subscription(SubscriptionState.TRIAL)
    clock.advance(days=3)
    event = _paid_invoice("evt_paid", clock.timestamp())

    first = await _post_event(client, clock, event)
    second = await _post_event(client, clock, event)

    assert first.status_code == 200
    assert first.json() == {"status": "ok", "event_id": "evt_paid"}
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate_ignored"
    current = _current(persistence)
    assert current.state is SubscriptionState.ACTIVE
    assert current.version == 2
    assert len(persistence.list_notifications("user-1")) == 1


@pytest.mark.asyncio
async def test_late_invoice_after_sweep_is_stale(client: AsyncClient, clock, persistence, container, seed_subscription):
    seed_subscription(SubscriptionState.TRIAL)
    clock.advance(days=15)
    container.trial_expiry_enforcer.sweep()
    event = _paid_invoice("evt_late", clock.timestamp() - 120)

    response = await _post_event(client, clock, event)

    assert response.status_code == 200
    assert response.json()["status"] == "stale_ignored"
    assert _current(persistence).state is SubscriptionState.EXPIRED
    assert persistence.get_event("evt_late").is_processed


@pytest.mark.asyncio
async def test_invalid_signature_touches_nothing(client: AsyncClient, clock, persistence, seed_subscription):
    seed_subscription(SubscriptionState.TRIAL)
    event = _paid_invoice("evt_forged", clock.timestamp())

    response = await _post_event(client, clock, event, secret="whsec_attacker")

    assert response.status_code == 400
    assert persistence.get_event("evt_forged") is None
    assert _current(persistence).state is SubscriptionState.TRIAL


@pytest.mark.asyncio
async def test_replayed_timestamp_is_rejected(client: AsyncClient, clock, persistence):
    event = _paid_invoice("evt_old", clock.timestamp())

    response = await _post_event(client, clock, event, timestamp=clock.timestamp() - 3600)

    assert response.status_code == 400
    assert persistence.get_event("evt_old") is None


@pytest.mark.asyncio
async def test_missing_signature_header_is_rejected(client: AsyncClient):
    response = await client.post("/api/stripe/webhook", content=b"{}")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_malformed_event_is_rejected(client: AsyncClient, clock):
    body = json.dumps({"type": "invoice.paid"}).encode("utf-8")
    response = await client.post(
        "/api/stripe/webhook",
        content=body,
        headers={"stripe-signature": sign_payload(body, clock.timestamp())},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(client: AsyncClient, clock, persistence):
    event = stripe_event("evt_refund", "charge.refunded", clock.timestamp(), {"customer": "cus_123"})

    response = await _post_event(client, clock, event)

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert persistence.get_event("evt_refund").is_processed


@pytest.mark.asyncio
async def test_storage_outage_asks_stripe_to_retry(client: AsyncClient, clock, container):
    event = _paid_invoice("evt_busy", clock.timestamp())

    with patch.object(
        container.event_dispatcher,
        "receive",
        side_effect=StorageUnavailable("database is locked"),
    ):
        response = await _post_event(client, clock, event)

    assert response.status_code == 503
