"""Stripe webhook endpoint."""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ....core.dependencies import get_event_dispatcher, get_webhook_verifier
from ....domain.errors import MalformedEvent, ReplayedTimestamp, SignatureInvalid, StorageUnavailable
from ....services.event_dispatcher import EventDispatcher
from ....services.webhook_verifier import WebhookVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe Webhooks"])


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    verifier: WebhookVerifier = Depends(get_webhook_verifier),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
) -> Dict[str, str]:
    """Handle Stripe webhook events.

    Any non-2xx answer makes Stripe redeliver the event later, so only
    transient storage failures return 503.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        envelope = verifier.verify(payload, sig_header)
    except (SignatureInvalid, ReplayedTimestamp) as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from exc
    except MalformedEvent as exc:
        logger.warning("Rejected malformed Stripe webhook: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        result = dispatcher.receive(envelope)
    except StorageUnavailable as exc:
        logger.warning("Storage unavailable while handling %s: %s", envelope.event_id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage unavailable, retry later",
        ) from exc

    return {"status": result.outcome.value, "event_id": envelope.event_id}
