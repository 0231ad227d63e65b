"""Stripe payment integration service."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe

from ..domain.errors import ProviderRejected, ProviderUnreachable

logger = logging.getLogger(__name__)


class StripeService:
    """Thin wrapper over the Stripe SDK for the outbound calls the synchronizer makes.

    The API key is passed on every request instead of being stored on the
    ``stripe`` module, so several configurations can coexist in one process.
    """

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("Stripe API key is required")
        self._api_key = api_key

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create a Stripe customer for a user, return its ID.

        The idempotency key makes concurrent calls for one user resolve to a
        single Stripe customer.
        """
        params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        customer = self._call(
            "create customer",
            stripe.Customer.create,
            idempotency_key=f"customer-{user_id}",
            **params,
        )
        return customer["id"]

    def create_trial_subscription(
        self,
        customer_id: str,
        price_id: str,
        trial_days: int,
    ) -> Dict[str, Any]:
        """Open a trialing subscription that cancels itself if no card is added."""
        subscription = self._call(
            "create trial subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            trial_period_days=trial_days,
            payment_settings={"save_default_payment_method": "on_subscription"},
            trial_settings={"end_behavior": {"missing_payment_method": "cancel"}},
        )
        return {
            "id": subscription["id"],
            "status": subscription.get("status"),
            "created": subscription.get("created"),
            "trial_end": subscription.get("trial_end"),
        }

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
    ) -> str:
        """Create a Stripe Checkout session, return the URL."""
        session = self._call(
            "create checkout session",
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata={"user_id": user_id},
        )
        return session["url"]

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a Stripe Billing Portal session, return the URL."""
        session = self._call(
            "create billing portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session["url"]

    def cancel_at_period_end(self, subscription_id: str) -> None:
        self._call(
            "cancel subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )

    def has_payment_on_file(self, customer_id: str, subscription_id: Optional[str] = None) -> bool:
        """Check whether Stripe holds a way to renew this customer after the trial."""
        customer = self._call(
            "retrieve customer",
            stripe.Customer.retrieve,
            customer_id,
            expand=["invoice_settings.default_payment_method"],
        )
        invoice_settings = customer.get("invoice_settings") or {}
        if invoice_settings.get("default_payment_method"):
            return True

        if subscription_id:
            subscription = self._call(
                "retrieve subscription",
                stripe.Subscription.retrieve,
                subscription_id,
            )
            if subscription.get("default_payment_method"):
                return True
            if subscription.get("status") == "active":
                return True
        return False

    def _call(self, action: str, method, *args: Any, **params: Any) -> Any:
        try:
            return method(*args, api_key=self._api_key, **params)
        except (stripe.InvalidRequestError, stripe.AuthenticationError, stripe.PermissionError) as exc:
            logger.warning("Stripe rejected %s: %s", action, str(exc))
            raise ProviderRejected(f"Stripe rejected {action}: {str(exc)}") from exc
        except stripe.StripeError as exc:
            logger.error("Failed to %s: %s", action, str(exc))
            raise ProviderUnreachable(f"Failed to {action}: {str(exc)}") from exc
