"""Links from the app to Stripe-hosted checkout and billing portal pages."""

from __future__ import annotations

import logging
from typing import Optional

from ..domain.errors import ConfigurationError, CustomerNotFound
from ..domain.models import Customer
from ..domain.ports.persistence import PersistenceGateway
from .stripe_service import StripeService

logger = logging.getLogger(__name__)


class BillingPortalService:
    """Creates Stripe Checkout and Billing Portal sessions for registered customers.

    Both calls are plain request/response: a Stripe failure is raised to the
    caller and never retried here.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        stripe_service: StripeService,
        *,
        price_id: Optional[str],
        frontend_base_url: str,
    ) -> None:
        self._persistence = persistence
        self._stripe = stripe_service
        self._price_id = price_id
        self._frontend_base_url = frontend_base_url.rstrip("/")

    def create_subscription_checkout(self, user_id: str) -> str:
        """
        Create a Checkout session that starts a paid subscription.

        Returns:
            Checkout session URL

        Raises:
            CustomerNotFound: If the user has no registered Stripe customer
            ConfigurationError: If no Stripe price is configured
            ProviderUnreachable: If Stripe fails
        """
        customer = self._require_customer(user_id)
        if not self._price_id:
            raise ConfigurationError("STRIPE_PRICE_ID is not configured")

        url = self._stripe.create_checkout_session(
            customer.external_customer_id,
            self._price_id,
            success_url=f"{self._frontend_base_url}/billing?checkout=success",
            cancel_url=f"{self._frontend_base_url}/billing?checkout=cancelled",
            user_id=user_id,
        )
        logger.info("Created checkout session for user %s.", user_id)
        return url

    def create_billing_portal_session(self, user_id: str) -> str:
        customer = self._require_customer(user_id)
        url = self._stripe.create_billing_portal_session(
            customer.external_customer_id,
            return_url=f"{self._frontend_base_url}/billing",
        )
        logger.info("Created billing portal session for user %s.", user_id)
        return url

    def _require_customer(self, user_id: str) -> Customer:
        customer = self._persistence.get_customer_by_user(user_id)
        if customer is None:
            raise CustomerNotFound(f"No Stripe customer registered for user {user_id}")
        return customer
