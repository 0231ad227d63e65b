"""Customer domain model linking users to Stripe customers."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(slots=True)
class Customer:
    id: int
    user_id: str
    external_customer_id: str
    current_subscription_id: Optional[int]
    created_at: datetime
