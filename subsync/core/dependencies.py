from fastapi import Depends, Request

from .container import ApplicationContainer


def get_container(request: Request) -> ApplicationContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Application container not initialised.")
    return container


def get_settings(container: ApplicationContainer = Depends(get_container)):
    return container.settings


def get_webhook_verifier(container: ApplicationContainer = Depends(get_container)):
    return container.webhook_verifier


def get_event_dispatcher(container: ApplicationContainer = Depends(get_container)):
    return container.event_dispatcher


def get_subscription_service(container: ApplicationContainer = Depends(get_container)):
    return container.subscription_service


def get_billing_portal_service(container: ApplicationContainer = Depends(get_container)):
    return container.billing_portal_service


def get_notification_service(container: ApplicationContainer = Depends(get_container)):
    return container.notification_service


def get_trial_expiry_enforcer(container: ApplicationContainer = Depends(get_container)):
    return container.trial_expiry_enforcer
