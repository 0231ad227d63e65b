from dataclasses import dataclass

from .config import Settings
from ..domain.ports.persistence import PersistenceGateway
from ..services.billing_portal import BillingPortalService
from ..services.customer_registry import CustomerRegistry
from ..services.event_dispatcher import EventDispatcher
from ..services.event_ledger import EventLedger
from ..services.notification_service import NotificationService
from ..services.stripe_service import StripeService
from ..services.subscription_service import SubscriptionService
from ..services.trial_expiry import TrialExpiryEnforcer
from ..services.webhook_verifier import WebhookVerifier


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    persistence: PersistenceGateway
    stripe_service: StripeService
    customer_registry: CustomerRegistry
    webhook_verifier: WebhookVerifier
    event_ledger: EventLedger
    event_dispatcher: EventDispatcher
    subscription_service: SubscriptionService
    billing_portal_service: BillingPortalService
    notification_service: NotificationService
    trial_expiry_enforcer: TrialExpiryEnforcer
