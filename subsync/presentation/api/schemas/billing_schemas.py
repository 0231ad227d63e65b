"""Pydantic schemas for billing API endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class StartTrialRequest(BaseModel):
    email: Optional[str] = Field(default=None, description="Email forwarded to Stripe for receipts")


class SubscriptionResponse(BaseModel):
    """Response schema for subscription data."""

    id: int
    state: str
    trial_ends_at: Optional[datetime]
    current_period_end: Optional[datetime]
    access_until: Optional[datetime]
    cancel_at_period_end: bool


class SubscriptionSummaryResponse(BaseModel):
    """Read-only billing state rendered by the UI."""

    state: Optional[str] = Field(default=None, description="trial, active, past_due, cancelled or expired")
    trial_days_remaining: Optional[int] = Field(default=None, description="Whole days left in the trial")
    period_end: Optional[datetime] = Field(default=None, description="End of the trial or paid period")
    has_access: bool
    cancel_at_period_end: bool = False


class BillingUrlResponse(BaseModel):
    url: str = Field(..., description="Stripe-hosted page to redirect the user to")


class NotificationResponse(BaseModel):
    id: int
    kind: str
    subscription_id: Optional[int]
    created_at: datetime
    dismissed_at: Optional[datetime]


class SweepResponse(BaseModel):
    """Result of one trial expiry sweep."""

    scanned: int
    expired: int
    skipped: int
    failures: int
    interrupted: bool
