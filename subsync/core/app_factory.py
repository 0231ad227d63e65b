from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .container import ApplicationContainer
from .logging import configure_logging
from ..domain.ports.persistence import PersistenceGateway
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..presentation.api.routers import billing_router
from ..presentation.api.routers import stripe_webhook as stripe_webhook_router
from ..services.billing_portal import BillingPortalService
from ..services.customer_registry import CustomerRegistry
from ..services.event_dispatcher import EventDispatcher
from ..services.event_ledger import EventLedger
from ..services.notification_service import NotificationService
from ..services.stripe_service import StripeService
from ..services.subscription_service import SubscriptionService
from ..services.trial_expiry import TrialExpiryEnforcer
from ..services.webhook_verifier import WebhookVerifier

logger = logging.getLogger(__name__)


def create_application(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(title="Subscription Synchronizer", lifespan=_create_lifespan(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(stripe_webhook_router.router)
    app.include_router(billing_router.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: ApplicationContainer = app.state.container  # type: ignore[attr-defined]
        return {"ok": True, "trial_sweep": container.trial_expiry_enforcer.is_running}

    return app


def build_container(
    settings: Settings,
    *,
    persistence: Optional[PersistenceGateway] = None,
    stripe_service: Optional[StripeService] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> ApplicationContainer:
    """Wire every service against one persistence gateway and Stripe client."""
    persistence = persistence or SQLitePersistence(settings.database_path)
    stripe_service = stripe_service or StripeService(settings.stripe_api_key)
    clock_kwargs: Dict[str, Any] = {"clock": clock} if clock else {}

    customer_registry = CustomerRegistry(persistence, stripe_service, **clock_kwargs)
    webhook_verifier = WebhookVerifier(
        settings.stripe_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
        **clock_kwargs,
    )
    event_ledger = EventLedger(persistence, **clock_kwargs)
    event_dispatcher = EventDispatcher(persistence, event_ledger, **clock_kwargs)
    subscription_service = SubscriptionService(
        persistence,
        customer_registry,
        stripe_service,
        price_id=settings.stripe_price_id,
        trial_days=settings.trial_days,
        **clock_kwargs,
    )
    billing_portal_service = BillingPortalService(
        persistence,
        stripe_service,
        price_id=settings.stripe_price_id,
        frontend_base_url=settings.frontend_base_url,
    )
    notification_service = NotificationService(persistence, **clock_kwargs)
    trial_expiry_enforcer = TrialExpiryEnforcer(
        persistence,
        stripe_service,
        interval_seconds=settings.trial_sweep_interval_seconds,
        **clock_kwargs,
    )

    return ApplicationContainer(
        settings=settings,
        persistence=persistence,
        stripe_service=stripe_service,
        customer_registry=customer_registry,
        webhook_verifier=webhook_verifier,
        event_ledger=event_ledger,
        event_dispatcher=event_dispatcher,
        subscription_service=subscription_service,
        billing_portal_service=billing_portal_service,
        notification_service=notification_service,
        trial_expiry_enforcer=trial_expiry_enforcer,
    )


def _create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        container = build_container(settings)
        app.state.container = container  # type: ignore[attr-defined]

        if settings.trial_sweep_enabled:
            await container.trial_expiry_enforcer.start()
        else:
            logger.info("Trial expiry sweep disabled; run scripts/run_trial_sweep.py instead.")

        try:
            yield
        finally:
            await container.trial_expiry_enforcer.stop()
            container.persistence.close()

    return lifespan
