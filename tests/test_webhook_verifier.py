"""Tests for Stripe-Signature verification and envelope parsing."""

import json

import pytest

from conftest import WEBHOOK_SECRET, FakeClock, sign_payload, stripe_event
from subsync.domain.errors import (
    InvalidSignature,
    MalformedEvent,
    ReplayedTimestamp,
    SignatureInvalid,
    StaleTimestamp,
)
from subsync.services.webhook_verifier import WebhookVerifier, parse_envelope


@pytest.fixture
def verifier(clock):
    return WebhookVerifier(WEBHOOK_SECRET, tolerance_seconds=300, clock=clock)


def _body(event_id="evt_1", created=1_767_225_600):
    event = stripe_event(event_id, "invoice.paid", created, {"customer": "cus_123", "amount_paid": 1000})
    return json.dumps(event).encode("utf-8")


def test_valid_signature_returns_envelope(verifier, clock: FakeClock):
    body = _body()
    envelope = verifier.verify(body, sign_payload(body, clock.timestamp()))

    assert envelope.event_id == "evt_1"
    assert envelope.type == "invoice.paid"
    assert envelope.created == 1_767_225_600
    assert envelope.data_object["customer"] == "cus_123"
    assert envelope.raw_payload == body.decode("utf-8")


def test_signature_with_wrong_secret_is_rejected(verifier, clock: FakeClock):
    body = _body()
    header = sign_payload(body, clock.timestamp(), secret="whsec_other")

    with pytest.raises(SignatureInvalid):
        verifier.verify(body, header)


def test_tampered_body_is_rejected(verifier, clock: FakeClock):
    header = sign_payload(_body(), clock.timestamp())

    with pytest.raises(SignatureInvalid):
        verifier.verify(_body(event_id="evt_forged"), header)


@pytest.mark.parametrize("header", ["", "v1=abc", "t=notanumber,v1=abc", "garbage"])
def test_missing_or_malformed_header_is_rejected(verifier, header):
    with pytest.raises(SignatureInvalid):
        verifier.verify(_body(), header)


def test_old_timestamp_is_rejected_even_with_valid_signature(verifier, clock: FakeClock):
    body = _body()
    header = sign_payload(body, clock.timestamp() - 301)

    with pytest.raises(ReplayedTimestamp):
        verifier.verify(body, header)


def test_future_timestamp_outside_tolerance_is_rejected(verifier, clock: FakeClock):
    body = _body()
    header = sign_payload(body, clock.timestamp() + 600)

    with pytest.raises(ReplayedTimestamp):
        verifier.verify(body, header)


def test_timestamp_inside_tolerance_is_accepted(verifier, clock: FakeClock):
    body = _body()
    header = sign_payload(body, clock.timestamp() - 299)

    assert verifier.verify(body, header).event_id == "evt_1"


def test_authentic_but_malformed_body_raises_malformed_event(verifier, clock: FakeClock):
    body = b'{"type": "invoice.paid"'
    with pytest.raises(MalformedEvent):
        verifier.verify(body, sign_payload(body, clock.timestamp()))


def test_error_aliases():
    assert InvalidSignature is SignatureInvalid
    assert StaleTimestamp is ReplayedTimestamp


def test_parse_envelope_accepts_event_id_key():
    body = json.dumps({"event_id": "evt_9", "type": "x.y", "created": 5, "data": {"object": {"id": "o"}}})
    envelope = parse_envelope(body)
    assert envelope.event_id == "evt_9"
    assert envelope.data_object == {"id": "o"}


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "invoice.paid", "created": 1, "data": {"object": {}}},
        {"id": "evt_1", "created": 1, "data": {"object": {}}},
        {"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}},
        {"id": "evt_1", "type": "invoice.paid", "created": 1},
        ["not", "an", "object"],
    ],
)
def test_parse_envelope_rejects_incomplete_events(payload):
    with pytest.raises(MalformedEvent):
        parse_envelope(json.dumps(payload))


def test_missing_secret_is_a_configuration_error():
    with pytest.raises(ValueError):
        WebhookVerifier("")
