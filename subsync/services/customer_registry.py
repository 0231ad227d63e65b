"""Mapping between internal users and Stripe customers."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..domain.ports.persistence import PersistenceGateway
from .stripe_service import StripeService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomerRegistry:
    """Creates Stripe customers lazily, at most one per user."""

    def __init__(
        self,
        persistence: PersistenceGateway,
        stripe_service: StripeService,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._persistence = persistence
        self._stripe = stripe_service
        self._clock = clock

    def get_or_create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Return the user's Stripe customer ID, creating the customer on first use.

        Args:
            user_id: Authenticated user identifier
            email: Optional email forwarded to Stripe

        Returns:
            Stripe customer ID

        Raises:
            ProviderUnreachable: If Stripe fails; nothing is stored in that case
        """
        existing = self._persistence.get_customer_by_user(user_id)
        if existing:
            return existing.external_customer_id

        external_id = self._stripe.create_customer(user_id, email)
        customer = self._persistence.insert_customer_if_absent(user_id, external_id, self._clock())
        if customer.external_customer_id != external_id:
            logger.warning(
                "Concurrent registration for user %s kept %s; Stripe customer %s is unused.",
                user_id,
                customer.external_customer_id,
                external_id,
            )
        else:
            logger.info("Registered Stripe customer %s for user %s.", external_id, user_id)
        return customer.external_customer_id

    def lookup_customer(self, external_customer_id: str) -> Optional[str]:
        customer = self._persistence.get_customer_by_external_id(external_customer_id)
        return customer.user_id if customer else None
