"""Notifications rendered by the UI layer (banners, trial countdown)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class NotificationKind(str, Enum):
    TRIAL_STARTED = "trial_started"
    TRIAL_CONVERTED = "trial_converted"
    TRIAL_CANCELLED = "trial_cancelled"
    TRIAL_EXPIRED = "trial_expired"
    SUBSCRIPTION_STARTED = "subscription_started"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"


@dataclass(slots=True)
class Notification:
    id: int
    user_id: str
    subscription_id: Optional[int]
    kind: NotificationKind
    created_at: datetime
    dismissed_at: Optional[datetime]
