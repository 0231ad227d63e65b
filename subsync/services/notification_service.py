from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List

from ..domain.models import Notification
from ..domain.ports.persistence import PersistenceGateway


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationService:
    """Read side of the notification outbox consumed by the UI layer."""

    def __init__(
        self,
        persistence: PersistenceGateway,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._persistence = persistence
        self._clock = clock

    def list_notifications(self, user_id: str, include_dismissed: bool = False) -> List[Notification]:
        return self._persistence.list_notifications(user_id, include_dismissed)

    def dismiss(self, user_id: str, notification_id: int) -> bool:
        """Hide a notification. Returns False when it does not belong to the user."""
        return self._persistence.dismiss_notification(user_id, notification_id, self._clock())
