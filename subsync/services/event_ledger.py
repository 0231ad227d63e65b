"""Durable record of every inbound event, written before any side effect."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..domain.models import RecordOutcome, WebhookEvent
from ..domain.ports.persistence import PersistenceGateway

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventLedger:
    """Separates "have we seen this event" from "did we finish applying it".

    ``processed_at`` is only ever set by the dispatcher inside the same
    transaction as the state change, so an event whose processing crashed is
    reported as ``RETRY`` on redelivery.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._persistence = persistence
        self._clock = clock

    def record_if_new(self, event_id: str, event_type: str, payload: str) -> RecordOutcome:
        if self._persistence.insert_event_if_absent(event_id, event_type, payload, self._clock()):
            return RecordOutcome.FRESH

        event = self._persistence.get_event(event_id)
        if event is not None and event.is_processed:
            return RecordOutcome.ALREADY_SEEN
        logger.info("Webhook %s was recorded earlier but never processed; retrying.", event_id)
        return RecordOutcome.RETRY

    def get(self, event_id: str) -> Optional[WebhookEvent]:
        return self._persistence.get_event(event_id)

    def list_unprocessed(
        self, older_than: Optional[datetime] = None, limit: int = 100
    ) -> List[WebhookEvent]:
        """Events recorded but never applied, oldest first, for operators."""
        events = self._persistence.list_unprocessed_events(limit)
        if older_than is None:
            return events
        return [event for event in events if event.received_at <= older_than]
