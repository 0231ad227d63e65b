import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from ...domain.errors import DuplicateSubscription, StaleTransition, StorageUnavailable
from ...domain.models import (
    Customer,
    Notification,
    NotificationKind,
    Subscription,
    SubscriptionState,
    WebhookEvent,
)
from ...domain.ports.persistence import PersistenceGateway


_SCHEMA = """
CREATE TABLE IF NOT EXISTS customers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL UNIQUE,
    external_customer_id TEXT NOT NULL UNIQUE,
    current_subscription_id INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    customer_id INTEGER NOT NULL,
    state TEXT NOT NULL CHECK (state IN ('trial', 'active', 'past_due', 'cancelled', 'expired')),
    trial_ends_at TEXT,
    current_period_end TEXT,
    external_subscription_id TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    last_event_at INTEGER NOT NULL DEFAULT 0,
    access_until TEXT,
    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(customer_id) REFERENCES customers(id) ON DELETE CASCADE
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_subscriptions_live_customer
    ON subscriptions(customer_id) WHERE state IN ('trial', 'active', 'past_due');

CREATE UNIQUE INDEX IF NOT EXISTS uq_subscriptions_external_id
    ON subscriptions(external_subscription_id) WHERE external_subscription_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_subscriptions_trial_sweep
    ON subscriptions(state, trial_ends_at);

CREATE TRIGGER IF NOT EXISTS trg_subscriptions_trial_ends_at_immutable
BEFORE UPDATE OF trial_ends_at ON subscriptions
WHEN OLD.trial_ends_at IS NOT NEW.trial_ends_at
BEGIN
    SELECT RAISE(ABORT, 'trial_ends_at is immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_subscriptions_terminal_immutable
BEFORE UPDATE ON subscriptions
WHEN OLD.state IN ('cancelled', 'expired')
BEGIN
    SELECT RAISE(ABORT, 'terminal subscriptions are immutable');
END;

CREATE TABLE IF NOT EXISTS webhook_events (
    event_id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    received_at TEXT NOT NULL,
    processed_at TEXT,
    raw_payload TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_webhook_events_unprocessed
    ON webhook_events(received_at) WHERE processed_at IS NULL;

CREATE TRIGGER IF NOT EXISTS trg_webhook_events_processed_immutable
BEFORE UPDATE ON webhook_events
WHEN OLD.processed_at IS NOT NULL
BEGIN
    SELECT RAISE(ABORT, 'processed webhook events are immutable');
END;

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    subscription_id INTEGER,
    kind TEXT NOT NULL,
    created_at TEXT NOT NULL,
    dismissed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_notifications_user_created
    ON notifications(user_id, created_at DESC);
"""


class SQLiteUnitOfWork:
    """Statements bound to one connection; atomic when run inside ``transaction()``."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # Customers --------------------------------------------------------------
    def get_customer(self, customer_id: int) -> Optional[Customer]:
        cur = self._conn.execute("SELECT * FROM customers WHERE id = ?", (customer_id,))
        row = cur.fetchone()
        return _row_to_customer(row) if row else None

    def get_customer_by_user(self, user_id: str) -> Optional[Customer]:
        cur = self._conn.execute("SELECT * FROM customers WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
        return _row_to_customer(row) if row else None

    def get_customer_by_external_id(self, external_customer_id: str) -> Optional[Customer]:
        cur = self._conn.execute(
            "SELECT * FROM customers WHERE external_customer_id = ?",
            (external_customer_id,),
        )
        row = cur.fetchone()
        return _row_to_customer(row) if row else None

    def insert_customer_if_absent(
        self, user_id: str, external_customer_id: str, created_at: datetime
    ) -> Customer:
        self._conn.execute(
            """
            INSERT INTO customers (user_id, external_customer_id, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (user_id, external_customer_id, _to_iso(created_at)),
        )
        customer = self.get_customer_by_user(user_id)
        if customer is None:
            raise RuntimeError("Failed to persist customer.")
        return customer

    def set_current_subscription(self, customer_id: int, subscription_id: int) -> None:
        self._conn.execute(
            "UPDATE customers SET current_subscription_id = ? WHERE id = ?",
            (subscription_id, customer_id),
        )

    # Webhook events ---------------------------------------------------------
    def insert_event_if_absent(
        self, event_id: str, event_type: str, raw_payload: str, received_at: datetime
    ) -> bool:
        cur = self._conn.execute(
            """
            INSERT INTO webhook_events (event_id, type, received_at, raw_payload)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(event_id) DO NOTHING
            """,
            (event_id, event_type, _to_iso(received_at), raw_payload),
        )
        return cur.rowcount == 1

    def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        cur = self._conn.execute("SELECT * FROM webhook_events WHERE event_id = ?", (event_id,))
        row = cur.fetchone()
        return _row_to_event(row) if row else None

    def list_unprocessed_events(self, limit: int) -> List[WebhookEvent]:
        cur = self._conn.execute(
            """
            SELECT * FROM webhook_events
            WHERE processed_at IS NULL
            ORDER BY received_at ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [_row_to_event(row) for row in cur.fetchall()]

    def mark_event_processed(self, event_id: str, processed_at: datetime) -> None:
        self._conn.execute(
            "UPDATE webhook_events SET processed_at = ? WHERE event_id = ? AND processed_at IS NULL",
            (_to_iso(processed_at), event_id),
        )

    # Subscriptions ----------------------------------------------------------
    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        cur = self._conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
        row = cur.fetchone()
        return _row_to_subscription(row) if row else None

    def get_current_subscription(self, customer_id: int) -> Optional[Subscription]:
        cur = self._conn.execute(
            """
            SELECT s.* FROM subscriptions s
            JOIN customers c ON c.current_subscription_id = s.id
            WHERE c.id = ?
            """,
            (customer_id,),
        )
        row = cur.fetchone()
        return _row_to_subscription(row) if row else None

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        cur = self._conn.execute(
            "SELECT * FROM subscriptions WHERE external_subscription_id = ?",
            (external_subscription_id,),
        )
        row = cur.fetchone()
        return _row_to_subscription(row) if row else None

    def list_subscriptions(self, customer_id: int) -> List[Subscription]:
        cur = self._conn.execute(
            "SELECT * FROM subscriptions WHERE customer_id = ? ORDER BY id DESC",
            (customer_id,),
        )
        return [_row_to_subscription(row) for row in cur.fetchall()]

    def list_expired_trials(self, now: datetime) -> List[Subscription]:
        cur = self._conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE state = 'trial' AND trial_ends_at IS NOT NULL AND trial_ends_at <= ?
            ORDER BY trial_ends_at ASC
            """,
            (_to_iso(now),),
        )
        return [_row_to_subscription(row) for row in cur.fetchall()]

    def insert_subscription(
        self,
        customer_id: int,
        *,
        state: SubscriptionState,
        trial_ends_at: Optional[datetime],
        current_period_end: Optional[datetime],
        external_subscription_id: Optional[str],
        last_event_at: int,
        created_at: datetime,
    ) -> Subscription:
        now = _to_iso(created_at)
        try:
            cur = self._conn.execute(
                """
                INSERT INTO subscriptions (
                    customer_id, state, trial_ends_at, current_period_end,
                    external_subscription_id, version, last_event_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
                """,
                (
                    customer_id,
                    state.value,
                    _to_iso(trial_ends_at),
                    _to_iso(current_period_end),
                    external_subscription_id,
                    last_event_at,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateSubscription(
                f"Customer {customer_id} already has a live or identical subscription."
            ) from exc
        subscription = self.get_subscription(cur.lastrowid)
        if subscription is None:
            raise RuntimeError("Failed to persist subscription.")
        return subscription

    def save_subscription(self, subscription: Subscription, *, expected_version: int) -> Subscription:
        """Write every mutable field, guarded by the version the caller read."""
        cur = self._conn.execute(
            """
            UPDATE subscriptions
            SET state = ?, current_period_end = ?, external_subscription_id = ?,
                version = version + 1, last_event_at = ?, access_until = ?,
                cancel_at_period_end = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                subscription.state.value,
                _to_iso(subscription.current_period_end),
                subscription.external_subscription_id,
                subscription.last_event_at,
                _to_iso(subscription.access_until),
                int(subscription.cancel_at_period_end),
                _to_iso(subscription.updated_at),
                subscription.id,
                expected_version,
            ),
        )
        if cur.rowcount == 0:
            raise StaleTransition(
                f"Subscription {subscription.id} is no longer at version {expected_version}."
            )
        saved = self.get_subscription(subscription.id)
        if saved is None:
            raise RuntimeError("Failed to reload subscription.")
        return saved

    # Notifications ----------------------------------------------------------
    def add_notification(
        self,
        user_id: str,
        subscription_id: Optional[int],
        kind: NotificationKind,
        created_at: datetime,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO notifications (user_id, subscription_id, kind, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, subscription_id, kind.value, _to_iso(created_at)),
        )

    def list_notifications(self, user_id: str, include_dismissed: bool = False) -> List[Notification]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if not include_dismissed:
            query += " AND dismissed_at IS NULL"
        query += " ORDER BY created_at DESC, id DESC"
        cur = self._conn.execute(query, (user_id,))
        return [_row_to_notification(row) for row in cur.fetchall()]

    def dismiss_notification(self, user_id: str, notification_id: int, dismissed_at: datetime) -> bool:
        cur = self._conn.execute(
            """
            UPDATE notifications SET dismissed_at = ?
            WHERE id = ? AND user_id = ? AND dismissed_at IS NULL
            """,
            (_to_iso(dismissed_at), notification_id, user_id),
        )
        return cur.rowcount > 0


class SQLitePersistence(PersistenceGateway):
    """SQLite-backed implementation of the persistence gateway.

    Every mutation runs inside ``BEGIN IMMEDIATE`` so writers in other
    processes serialize on the database lock; the in-process lock keeps the
    shared connection to one caller at a time.
    """

    def __init__(self, path: Path, *, busy_timeout: float = 5.0) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            path,
            check_same_thread=False,
            isolation_level=None,
            timeout=busy_timeout,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._uow = SQLiteUnitOfWork(self._conn)
        self._initialize()

    def _initialize(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[SQLiteUnitOfWork]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageUnavailable(f"Unable to start transaction: {exc}") from exc
            try:
                yield self._uow
                self._conn.execute("COMMIT")
            except sqlite3.IntegrityError:
                self._rollback()
                raise
            except sqlite3.Error as exc:
                self._rollback()
                raise StorageUnavailable(f"Transaction aborted: {exc}") from exc
            except BaseException:
                self._rollback()
                raise

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    # Single-statement operations -------------------------------------------
    def insert_customer_if_absent(
        self, user_id: str, external_customer_id: str, created_at: datetime
    ) -> Customer:
        with self.transaction() as tx:
            return tx.insert_customer_if_absent(user_id, external_customer_id, created_at)

    def insert_event_if_absent(
        self, event_id: str, event_type: str, raw_payload: str, received_at: datetime
    ) -> bool:
        with self.transaction() as tx:
            return tx.insert_event_if_absent(event_id, event_type, raw_payload, received_at)

    def dismiss_notification(self, user_id: str, notification_id: int, dismissed_at: datetime) -> bool:
        with self.transaction() as tx:
            return tx.dismiss_notification(user_id, notification_id, dismissed_at)

    # Reads ------------------------------------------------------------------
    def get_customer(self, customer_id: int) -> Optional[Customer]:
        with self._lock:
            return self._uow.get_customer(customer_id)

    def get_customer_by_user(self, user_id: str) -> Optional[Customer]:
        with self._lock:
            return self._uow.get_customer_by_user(user_id)

    def get_customer_by_external_id(self, external_customer_id: str) -> Optional[Customer]:
        with self._lock:
            return self._uow.get_customer_by_external_id(external_customer_id)

    def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        with self._lock:
            return self._uow.get_event(event_id)

    def list_unprocessed_events(self, limit: int) -> List[WebhookEvent]:
        with self._lock:
            return self._uow.list_unprocessed_events(limit)

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        with self._lock:
            return self._uow.get_subscription(subscription_id)

    def get_current_subscription(self, customer_id: int) -> Optional[Subscription]:
        with self._lock:
            return self._uow.get_current_subscription(customer_id)

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._uow.get_subscription_by_external_id(external_subscription_id)

    def list_subscriptions(self, customer_id: int) -> List[Subscription]:
        with self._lock:
            return self._uow.list_subscriptions(customer_id)

    def list_expired_trials(self, now: datetime) -> List[Subscription]:
        with self._lock:
            return self._uow.list_expired_trials(now)

    def list_notifications(self, user_id: str, include_dismissed: bool = False) -> List[Notification]:
        with self._lock:
            return self._uow.list_notifications(user_id, include_dismissed)


# Helpers --------------------------------------------------------------------
def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    result = datetime.fromisoformat(value)
    if result.tzinfo is None:
        return result.replace(tzinfo=timezone.utc)
    return result.astimezone(timezone.utc)


def _row_to_customer(row: sqlite3.Row) -> Customer:
    return Customer(
        id=row["id"],
        user_id=row["user_id"],
        external_customer_id=row["external_customer_id"],
        current_subscription_id=row["current_subscription_id"],
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        customer_id=row["customer_id"],
        state=SubscriptionState(row["state"]),
        trial_ends_at=_parse_datetime(row["trial_ends_at"]),
        current_period_end=_parse_datetime(row["current_period_end"]),
        external_subscription_id=row["external_subscription_id"],
        version=row["version"],
        last_event_at=row["last_event_at"],
        access_until=_parse_datetime(row["access_until"]),
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        created_at=_parse_datetime(row["created_at"]),
        updated_at=_parse_datetime(row["updated_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> WebhookEvent:
    return WebhookEvent(
        event_id=row["event_id"],
        type=row["type"],
        received_at=_parse_datetime(row["received_at"]),
        processed_at=_parse_datetime(row["processed_at"]),
        raw_payload=row["raw_payload"],
    )


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        subscription_id=row["subscription_id"],
        kind=NotificationKind(row["kind"]),
        created_at=_parse_datetime(row["created_at"]),
        dismissed_at=_parse_datetime(row["dismissed_at"]),
    )
