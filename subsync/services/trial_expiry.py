from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from ..domain.errors import ProviderRejected, ProviderUnreachable, StaleTransition, StorageUnavailable
from ..domain.models import Subscription, SubscriptionState
from ..domain.ports.persistence import PersistenceGateway
from ..domain.transitions import TRIAL_EXPIRY
from .stripe_service import StripeService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SweepSummary:
    scanned: int = 0
    expired: int = 0
    skipped: int = 0
    failures: int = 0
    interrupted: bool = False


class TrialExpiryEnforcer:
    """Background worker that expires trials Stripe never converted.

    Stripe normally cancels an unpaid trial by itself; this sweep is the
    backstop for a lost or delayed webhook. Each expiry goes through the same
    version-guarded write as webhook transitions, so a concurrent webhook wins
    and the sweep simply discards its own write.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        stripe_service: StripeService,
        *,
        interval_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._persistence = persistence
        self._stripe = stripe_service
        self._interval = interval_seconds
        self._clock = clock
        self._stop_requested = threading.Event()
        self._shutdown = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task:
            return
        logger.info("Starting trial expiry sweep every %s seconds.", self._interval)
        self._shutdown.clear()
        self._stop_requested.clear()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name="trial-expiry")

    async def stop(self) -> None:
        if not self._task:
            return
        logger.info("Stopping trial expiry sweep.")
        self._shutdown.set()
        self._stop_requested.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def _run(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:  # pragma: no cover - defensive
                logger.exception("Unexpected error during trial expiry sweep.")
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    def sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        """Expire every trial whose end has passed without a payment method.

        Safe to run repeatedly: a trial that is already expired is no longer
        selected, and a row changed since selection fails the version check.
        """
        now = now or self._clock()
        summary = SweepSummary()
        candidates = self._persistence.list_expired_trials(now)
        logger.info("Trial expiry sweep found %s candidate(s).", len(candidates))

        for subscription in candidates:
            if self._stop_requested.is_set():
                summary.interrupted = True
                logger.info("Trial expiry sweep interrupted after %s row(s).", summary.scanned)
                break
            summary.scanned += 1
            try:
                if self._expire(subscription, now):
                    summary.expired += 1
                else:
                    summary.skipped += 1
            except (ProviderUnreachable, ProviderRejected) as exc:
                summary.failures += 1
                logger.warning(
                    "Skipping trial %s until next sweep, Stripe check failed: %s",
                    subscription.id,
                    exc,
                )
            except StorageUnavailable as exc:
                summary.failures += 1
                logger.warning("Skipping trial %s, storage unavailable: %s", subscription.id, exc)

        logger.info(
            "Trial expiry sweep done: scanned=%s expired=%s skipped=%s failures=%s",
            summary.scanned,
            summary.expired,
            summary.skipped,
            summary.failures,
        )
        return summary

    def _expire(self, subscription: Subscription, now: datetime) -> bool:
        customer = self._persistence.get_customer(subscription.customer_id)
        if customer is None:
            logger.warning("Trial %s has no customer record; skipped.", subscription.id)
            return False

        if self._stripe.has_payment_on_file(
            customer.external_customer_id, subscription.external_subscription_id
        ):
            logger.info("Trial %s has a payment method on file; awaiting Stripe invoice.", subscription.id)
            return False

        expired = replace(
            subscription,
            state=TRIAL_EXPIRY.next_state,
            access_until=now,
            last_event_at=max(subscription.last_event_at, int(now.timestamp())),
            updated_at=now,
        )
        with self._persistence.transaction() as tx:
            try:
                saved = tx.save_subscription(expired, expected_version=subscription.version)
            except StaleTransition as exc:
                logger.info("Trial %s changed during sweep; left as is: %s", subscription.id, exc)
                return False
            tx.add_notification(customer.user_id, saved.id, TRIAL_EXPIRY.notification, now)

        logger.info(
            "Subscription %s: %s -> %s by trial sweep.",
            subscription.id,
            SubscriptionState.TRIAL.value,
            saved.state.value,
        )
        return True
