"""Webhook event records and the parsed envelope handed to the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class RecordOutcome(str, Enum):
    """Result of recording an inbound event in the ledger."""

    FRESH = "fresh"
    RETRY = "retry"  # recorded earlier, never finished processing
    ALREADY_SEEN = "already_seen"


@dataclass(slots=True)
class WebhookEvent:
    event_id: str
    type: str
    received_at: datetime
    processed_at: Optional[datetime]
    raw_payload: str

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None


@dataclass(slots=True)
class EventEnvelope:
    """Verified Stripe event: identity, type, ordering marker and object."""

    event_id: str
    type: str
    created: int
    data_object: Dict[str, Any] = field(default_factory=dict)
    raw_payload: str = ""
