"""Authentication of inbound Stripe webhook requests."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import stripe

from ..domain.errors import MalformedEvent, ReplayedTimestamp, SignatureInvalid
from ..domain.models import EventEnvelope

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookVerifier:
    """Checks the ``Stripe-Signature`` header and the replay window.

    The header carries the signing timestamp (``t=``) and one or more
    HMAC-SHA256 signatures (``v1=``) computed over ``"{t}.{body}"``.
    """

    def __init__(
        self,
        secret: str,
        *,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("Webhook signing secret is required")
        self._secret = secret
        self._tolerance = tolerance_seconds
        self._clock = clock

    def verify(
        self,
        payload: bytes,
        signature_header: str,
        received_at: Optional[datetime] = None,
    ) -> EventEnvelope:
        """
        Authenticate a webhook request and parse its event.

        Raises:
            SignatureInvalid: Header missing/malformed or signature mismatch
            ReplayedTimestamp: Signing time outside the tolerance window
            MalformedEvent: Authentic body that is not a usable event
        """
        if not signature_header:
            raise SignatureInvalid("Missing Stripe-Signature header")
        timestamp = _signed_timestamp(signature_header)

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalid("Webhook body is not valid UTF-8") from exc

        try:
            # Constant-time HMAC comparison; the replay window is checked below
            # against our own clock.
            stripe.WebhookSignature.verify_header(body, signature_header, self._secret, tolerance=None)
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalid(str(exc)) from exc

        now = received_at or self._clock()
        skew = abs(now.timestamp() - timestamp)
        if skew > self._tolerance:
            raise ReplayedTimestamp(
                f"Webhook signed at {timestamp} is {int(skew)}s away from receipt time"
            )

        return parse_envelope(body)


def _signed_timestamp(signature_header: str) -> int:
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError as exc:
                raise SignatureInvalid("Malformed timestamp in Stripe-Signature header") from exc
    raise SignatureInvalid("No timestamp in Stripe-Signature header")


def parse_envelope(body: str) -> EventEnvelope:
    """Parse a Stripe event body into an envelope."""
    try:
        event: Any = json.loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedEvent("Webhook body is not valid JSON") from exc
    if not isinstance(event, dict):
        raise MalformedEvent("Webhook body must be a JSON object")

    event_id = str(event.get("id") or event.get("event_id") or "").strip()
    if not event_id:
        raise MalformedEvent("Event has no id")

    event_type = str(event.get("type") or "").strip()
    if not event_type:
        raise MalformedEvent("Event has no type")

    try:
        created = int(event["created"])
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedEvent("Event has no usable created timestamp") from exc

    data = event.get("data")
    if not isinstance(data, dict):
        raise MalformedEvent("Event has no data object")
    data_object = data.get("object") if isinstance(data.get("object"), dict) else data

    return EventEnvelope(
        event_id=event_id,
        type=event_type,
        created=created,
        data_object=data_object,
        raw_payload=body,
    )
