"""API router for the signed-in user's billing state."""

import asyncio
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from ....core.dependencies import (
    get_billing_portal_service,
    get_notification_service,
    get_subscription_service,
    get_trial_expiry_enforcer,
)
from ....domain.errors import (
    BillingError,
    ConfigurationError,
    CustomerNotFound,
    ProviderRejected,
    ProviderUnreachable,
    StaleTransition,
    StorageUnavailable,
    SubscriptionNotFound,
    TrialUnavailable,
)
from ....domain.models import Subscription
from ....services.billing_portal import BillingPortalService
from ....services.notification_service import NotificationService
from ....services.subscription_service import SubscriptionService
from ....services.trial_expiry import TrialExpiryEnforcer
from ..dependencies import get_current_user_id, require_operator
from ..schemas.billing_schemas import (
    BillingUrlResponse,
    NotificationResponse,
    StartTrialRequest,
    SubscriptionResponse,
    SubscriptionSummaryResponse,
    SweepResponse,
)

router = APIRouter(prefix="/api/billing", tags=["billing"])

_ERROR_STATUS = {
    CustomerNotFound: status.HTTP_404_NOT_FOUND,
    SubscriptionNotFound: status.HTTP_404_NOT_FOUND,
    TrialUnavailable: status.HTTP_409_CONFLICT,
    StaleTransition: status.HTTP_409_CONFLICT,
    ProviderRejected: status.HTTP_502_BAD_GATEWAY,
    ProviderUnreachable: status.HTTP_502_BAD_GATEWAY,
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_error(exc: BillingError) -> HTTPException:
    code = _ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=str(exc))


def _to_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        state=subscription.state.value,
        trial_ends_at=subscription.trial_ends_at,
        current_period_end=subscription.current_period_end,
        access_until=subscription.access_until,
        cancel_at_period_end=subscription.cancel_at_period_end,
    )


@router.get("/summary", response_model=SubscriptionSummaryResponse)
async def get_summary(
    user_id: str = Depends(get_current_user_id),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionSummaryResponse:
    """Get the current user's subscription state."""
    summary = subscription_service.get_subscription_summary(user_id)
    return SubscriptionSummaryResponse(
        state=summary.state.value if summary.state else None,
        trial_days_remaining=summary.trial_days_remaining,
        period_end=summary.period_end,
        has_access=summary.has_access,
        cancel_at_period_end=summary.cancel_at_period_end,
    )


@router.post("/trial", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def start_trial(
    payload: StartTrialRequest,
    user_id: str = Depends(get_current_user_id),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    """Start the free trial."""
    try:
        subscription = subscription_service.start_trial(user_id, payload.email)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return _to_response(subscription)


@router.post("/checkout", response_model=BillingUrlResponse)
async def create_checkout(
    user_id: str = Depends(get_current_user_id),
    portal_service: BillingPortalService = Depends(get_billing_portal_service),
) -> BillingUrlResponse:
    """Create a Stripe Checkout session for a paid subscription."""
    try:
        url = portal_service.create_subscription_checkout(user_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return BillingUrlResponse(url=url)


@router.post("/portal", response_model=BillingUrlResponse)
async def create_portal(
    user_id: str = Depends(get_current_user_id),
    portal_service: BillingPortalService = Depends(get_billing_portal_service),
) -> BillingUrlResponse:
    """Create a Stripe Billing Portal session."""
    try:
        url = portal_service.create_billing_portal_session(user_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return BillingUrlResponse(url=url)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    """Cancel the current subscription at the end of the period."""
    try:
        subscription = subscription_service.cancel_subscription(user_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return _to_response(subscription)


@router.get("/notifications", response_model=List[NotificationResponse])
async def list_notifications(
    include_dismissed: bool = False,
    user_id: str = Depends(get_current_user_id),
    notification_service: NotificationService = Depends(get_notification_service),
) -> List[NotificationResponse]:
    notifications = notification_service.list_notifications(user_id, include_dismissed)
    return [
        NotificationResponse(
            id=item.id,
            kind=item.kind.value,
            subscription_id=item.subscription_id,
            created_at=item.created_at,
            dismissed_at=item.dismissed_at,
        )
        for item in notifications
    ]


@router.post("/notifications/{notification_id}/dismiss")
async def dismiss_notification(
    notification_id: int,
    user_id: str = Depends(get_current_user_id),
    notification_service: NotificationService = Depends(get_notification_service),
) -> Dict[str, bool]:
    if not notification_service.dismiss(user_id, notification_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"dismissed": True}


@router.post("/admin/sweep", response_model=SweepResponse)
async def run_trial_sweep(
    _: None = Depends(require_operator),
    enforcer: TrialExpiryEnforcer = Depends(get_trial_expiry_enforcer),
) -> SweepResponse:
    """Run one trial expiry sweep now."""
    summary = await asyncio.to_thread(enforcer.sweep)
    return SweepResponse(
        scanned=summary.scanned,
        expired=summary.expired,
        skipped=summary.skipped,
        failures=summary.failures,
        interrupted=summary.interrupted,
    )
