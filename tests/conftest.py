"""Shared fixtures: temporary SQLite store, fake clock and a mocked Stripe gateway."""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from subsync.core.app_factory import build_container, create_application
from subsync.core.config import Settings
from subsync.domain.models import EventEnvelope, SubscriptionState
from subsync.infrastructure.persistence.sqlite import SQLitePersistence
from subsync.presentation.api.dependencies import get_current_user_id
from subsync.services.stripe_service import StripeService

WEBHOOK_SECRET = "whsec_test_secret"
OPERATOR_TOKEN = "operator-test-token"
USER_ID = "user-1"
START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic stand-in for ``datetime.now(timezone.utc)``."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def timestamp(self) -> int:
        return int(self.now.timestamp())


def sign_payload(body: bytes, timestamp: int, secret: str = WEBHOOK_SECRET) -> str:
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.".encode("utf-8") + body,
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_id: str, event_type: str, created: int, obj: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def to_envelope(event: Dict[str, Any]) -> EventEnvelope:
    return EventEnvelope(
        event_id=event["id"],
        type=event["type"],
        created=event["created"],
        data_object=event["data"]["object"],
        raw_payload=json.dumps(event),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "subsync.db"


@pytest.fixture
def persistence(db_path):
    store = SQLitePersistence(db_path)
    yield store
    store.close()


@pytest.fixture
def stripe_service():
    service = MagicMock(spec=StripeService)
    service.create_customer.return_value = "cus_123"
    service.create_trial_subscription.return_value = {
        "id": "sub_123",
        "status": "trialing",
        "created": int(START.timestamp()),
        "trial_end": int((START + timedelta(days=14)).timestamp()),
    }
    service.create_checkout_session.return_value = "https://checkout.stripe.test/session"
    service.create_billing_portal_session.return_value = "https://billing.stripe.test/session"
    service.has_payment_on_file.return_value = False
    return service


@pytest.fixture
def settings(monkeypatch, db_path):
    monkeypatch.setenv("STRIPE_API_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_PRICE_ID", "price_123")
    monkeypatch.setenv("DATABASE_PATH", str(db_path))
    monkeypatch.setenv("OPERATOR_TOKEN", OPERATOR_TOKEN)
    monkeypatch.setenv("TRIAL_SWEEP_ENABLED", "false")
    return Settings()


@pytest.fixture
def container(settings, persistence, stripe_service, clock):
    return build_container(
        settings,
        persistence=persistence,
        stripe_service=stripe_service,
        clock=clock,
    )


@pytest.fixture
def seed_subscription(persistence, clock):
    """Insert a customer and make the given subscription its current one."""

    def _seed(
        state: SubscriptionState = SubscriptionState.TRIAL,
        *,
        user_id: str = USER_ID,
        external_customer_id: str = "cus_123",
        external_subscription_id: Optional[str] = "sub_123",
        trial_days: int = 14,
        current_period_end: Optional[datetime] = None,
        last_event_at: Optional[int] = None,
    ):
        now = clock()
        customer = persistence.insert_customer_if_absent(user_id, external_customer_id, now)
        with persistence.transaction() as tx:
            subscription = tx.insert_subscription(
                customer.id,
                state=state,
                trial_ends_at=now + timedelta(days=trial_days) if state is SubscriptionState.TRIAL else None,
                current_period_end=current_period_end,
                external_subscription_id=external_subscription_id,
                last_event_at=clock.timestamp() if last_event_at is None else last_event_at,
                created_at=now,
            )
            tx.set_current_subscription(customer.id, subscription.id)
        return subscription

    return _seed


@pytest.fixture
def app(settings, container):
    a = create_application(settings)
    a.state.container = container
    a.dependency_overrides[get_current_user_id] = lambda: USER_ID
    return a


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def unauthenticated_client(settings, container):
    """Client with NO identity override -- tests that endpoints require a user."""
    a = create_application(settings)
    a.state.container = container
    transport = ASGITransport(app=a)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
