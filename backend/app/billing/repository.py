"""PostgreSQL persistence for the ledger, subscriptions and entitlement snapshots."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, Optional, Type

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from ..entitlements.models import EntitlementSnapshot, PlanLimits, PlanTier, SubscriptionStatus
from .exceptions import ConcurrentUpdateError, LedgerError, SubscriptionStoreError, WebhookError
from .ledger import DEFAULT_RECLAIM_AFTER
from .models import AdmissionResult, IdempotencyRecord, IdempotencyStatus, SubscriptionAggregate

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS billing_webhook_events (
        event_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 1,
        first_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        applied_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_subscriptions (
        tenant_id TEXT PRIMARY KEY,
        plan_tier TEXT NOT NULL,
        status TEXT NOT NULL,
        current_period_end TIMESTAMPTZ,
        last_applied_event_at TIMESTAMPTZ,
        version INTEGER NOT NULL,
        provider_customer_id TEXT,
        provider_subscription_id TEXT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS billing_subscriptions_provider_subscription_idx
        ON billing_subscriptions (provider_subscription_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS billing_subscriptions_provider_customer_idx
        ON billing_subscriptions (provider_customer_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_entitlement_snapshots (
        tenant_id TEXT PRIMARY KEY,
        plan_tier TEXT NOT NULL,
        subscribed_tier TEXT NOT NULL,
        subscription_status TEXT NOT NULL,
        limits JSONB NOT NULL,
        computed_at TIMESTAMPTZ NOT NULL
    )
    """,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


class _PostgresStore:
    """Shared cursor handling that maps driver failures to a domain error."""

    error_class: Type[WebhookError] = SubscriptionStoreError

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            raise self.error_class(f"Database error: {exc.__class__.__name__}") from exc


def ensure_billing_schema(conn: Optional[PgConnection] = None) -> None:
    """Create the billing tables when they do not exist yet."""

    store = _PostgresStore(conn=conn)
    with store._cursor() as cursor:
        for statement in SCHEMA_STATEMENTS:
            cursor.execute(statement)


def _row_to_record(row: dict) -> IdempotencyRecord:
    return IdempotencyRecord(
        event_id=row["event_id"],
        status=IdempotencyStatus(row["status"]),
        attempts=int(row["attempts"]),
        first_seen_at=row["first_seen_at"],
        updated_at=row["updated_at"],
        applied_at=row.get("applied_at"),
    )


def _row_to_subscription(row: dict) -> SubscriptionAggregate:
    return SubscriptionAggregate(
        tenant_id=row["tenant_id"],
        plan_tier=PlanTier(row["plan_tier"]),
        status=SubscriptionStatus(row["status"]),
        current_period_end=row.get("current_period_end"),
        last_applied_event_at=row.get("last_applied_event_at"),
        version=int(row["version"]),
        provider_customer_id=row.get("provider_customer_id"),
        provider_subscription_id=row.get("provider_subscription_id"),
        updated_at=row["updated_at"],
    )


def _row_to_snapshot(row: dict) -> EntitlementSnapshot:
    return EntitlementSnapshot(
        tenant_id=row["tenant_id"],
        plan_tier=PlanTier(row["plan_tier"]),
        subscribed_tier=PlanTier(row["subscribed_tier"]),
        subscription_status=SubscriptionStatus(row["subscription_status"]),
        limits=PlanLimits.from_dict(row["limits"]),
        computed_at=row["computed_at"],
    )


class PostgresIdempotencyLedger(_PostgresStore):
    """Ledger backed by a conditional upsert on ``billing_webhook_events``."""

    error_class = LedgerError

    def __init__(
        self,
        *,
        conn: Optional[PgConnection] = None,
        reclaim_after: timedelta = DEFAULT_RECLAIM_AFTER,
    ) -> None:
        super().__init__(conn=conn)
        self._reclaim_seconds = reclaim_after.total_seconds()

    def try_begin(self, event_id: str) -> AdmissionResult:
        with self._cursor() as cursor:
            # A single statement keeps admission linearizable per event id.
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (event_id, status)
                VALUES (%(event_id)s, %(in_progress)s)
                ON CONFLICT (event_id) DO UPDATE SET
                    status = %(in_progress)s,
                    attempts = billing_webhook_events.attempts + 1,
                    updated_at = NOW()
                WHERE billing_webhook_events.status = %(failed)s
                   OR (
                        billing_webhook_events.status = %(in_progress)s
                        AND billing_webhook_events.updated_at
                            < NOW() - make_interval(secs => %(reclaim_seconds)s)
                   )
                RETURNING event_id, attempts
                """,
                {
                    "event_id": event_id,
                    "in_progress": IdempotencyStatus.IN_PROGRESS.value,
                    "failed": IdempotencyStatus.FAILED.value,
                    "reclaim_seconds": self._reclaim_seconds,
                },
            )
            admitted = cursor.fetchone()
            if admitted:
                if int(admitted["attempts"]) > 1:
                    logger.info("Re-admitted event %s (attempt %s)", event_id, admitted["attempts"])
                return AdmissionResult.ADMITTED

            cursor.execute(
                "SELECT status FROM billing_webhook_events WHERE event_id = %s",
                (event_id,),
            )
            row = cursor.fetchone()
            if row and row["status"] == IdempotencyStatus.APPLIED.value:
                return AdmissionResult.ALREADY_APPLIED
            return AdmissionResult.IN_PROGRESS

    def mark_applied(self, event_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_webhook_events
                SET status = %s, applied_at = NOW(), updated_at = NOW()
                WHERE event_id = %s AND status = %s
                """,
                (IdempotencyStatus.APPLIED.value, event_id, IdempotencyStatus.IN_PROGRESS.value),
            )
            if cursor.rowcount == 0:
                logger.warning("Cannot mark event %s applied; it is not in progress", event_id)

    def mark_failed(self, event_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_webhook_events
                SET status = %s, updated_at = NOW()
                WHERE event_id = %s AND status = %s
                """,
                (IdempotencyStatus.FAILED.value, event_id, IdempotencyStatus.IN_PROGRESS.value),
            )
            if cursor.rowcount == 0:
                logger.warning("Cannot mark event %s failed; it is not in progress", event_id)

    def get_record(self, event_id: str) -> Optional[IdempotencyRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_webhook_events
                WHERE event_id = %s
                LIMIT 1
                """,
                (event_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None


class PostgresSubscriptionRepository(_PostgresStore):
    """Subscription aggregates with optimistic version checks."""

    def get_subscription(self, tenant_id: str) -> Optional[SubscriptionAggregate]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE tenant_id = %s
                LIMIT 1
                """,
                (tenant_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def save_subscription(
        self,
        aggregate: SubscriptionAggregate,
        *,
        expected_version: int,
    ) -> SubscriptionAggregate:
        params = {
            "tenant_id": aggregate.tenant_id,
            "plan_tier": aggregate.plan_tier.value,
            "status": aggregate.status.value,
            "current_period_end": aggregate.current_period_end,
            "last_applied_event_at": aggregate.last_applied_event_at,
            "provider_customer_id": aggregate.provider_customer_id,
            "provider_subscription_id": aggregate.provider_subscription_id,
            "expected_version": expected_version,
        }
        with self._cursor() as cursor:
            if expected_version == 0:
                cursor.execute(
                    """
                    INSERT INTO billing_subscriptions (
                        tenant_id,
                        plan_tier,
                        status,
                        current_period_end,
                        last_applied_event_at,
                        version,
                        provider_customer_id,
                        provider_subscription_id
                    )
                    VALUES (%(tenant_id)s, %(plan_tier)s, %(status)s, %(current_period_end)s,
                            %(last_applied_event_at)s, 1, %(provider_customer_id)s,
                            %(provider_subscription_id)s)
                    ON CONFLICT (tenant_id) DO NOTHING
                    RETURNING *
                    """,
                    params,
                )
            else:
                cursor.execute(
                    """
                    UPDATE billing_subscriptions
                    SET plan_tier = %(plan_tier)s,
                        status = %(status)s,
                        current_period_end = %(current_period_end)s,
                        last_applied_event_at = %(last_applied_event_at)s,
                        provider_customer_id = %(provider_customer_id)s,
                        provider_subscription_id = %(provider_subscription_id)s,
                        version = version + 1,
                        updated_at = NOW()
                    WHERE tenant_id = %(tenant_id)s AND version = %(expected_version)s
                    RETURNING *
                    """,
                    params,
                )
            row = cursor.fetchone()
            if not row:
                raise ConcurrentUpdateError(aggregate.tenant_id, expected_version)
            return _row_to_subscription(row)

    def find_tenant_id(
        self,
        *,
        customer_id: Optional[str],
        subscription_id: Optional[str],
    ) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT tenant_id
                FROM billing_subscriptions
                WHERE (%(subscription_id)s IS NOT NULL AND provider_subscription_id = %(subscription_id)s)
                   OR (%(customer_id)s IS NOT NULL AND provider_customer_id = %(customer_id)s)
                ORDER BY (provider_subscription_id = %(subscription_id)s) DESC NULLS LAST, updated_at DESC
                LIMIT 1
                """,
                {"subscription_id": subscription_id, "customer_id": customer_id},
            )
            row = cursor.fetchone()
            return row["tenant_id"] if row else None


class PostgresEntitlementSnapshotStore(_PostgresStore):
    """Persists derived entitlement snapshots per tenant."""

    def get_snapshot(self, tenant_id: str) -> Optional[EntitlementSnapshot]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_entitlement_snapshots
                WHERE tenant_id = %s
                LIMIT 1
                """,
                (tenant_id,),
            )
            row = cursor.fetchone()
            return _row_to_snapshot(row) if row else None

    def save_snapshot(self, snapshot: EntitlementSnapshot) -> EntitlementSnapshot:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_entitlement_snapshots (
                    tenant_id,
                    plan_tier,
                    subscribed_tier,
                    subscription_status,
                    limits,
                    computed_at
                )
                VALUES (%(tenant_id)s, %(plan_tier)s, %(subscribed_tier)s,
                        %(subscription_status)s, %(limits)s, %(computed_at)s)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    plan_tier = EXCLUDED.plan_tier,
                    subscribed_tier = EXCLUDED.subscribed_tier,
                    subscription_status = EXCLUDED.subscription_status,
                    limits = EXCLUDED.limits,
                    computed_at = EXCLUDED.computed_at
                RETURNING *
                """,
                {
                    "tenant_id": snapshot.tenant_id,
                    "plan_tier": snapshot.plan_tier.value,
                    "subscribed_tier": snapshot.subscribed_tier.value,
                    "subscription_status": snapshot.subscription_status.value,
                    "limits": psycopg2.extras.Json(snapshot.limits.to_dict()),
                    "computed_at": snapshot.computed_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise SubscriptionStoreError("Failed to persist entitlement snapshot")
            return _row_to_snapshot(row)

    def discard(self, tenant_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM billing_entitlement_snapshots WHERE tenant_id = %s",
                (tenant_id,),
            )


__all__ = [
    "PostgresEntitlementSnapshotStore",
    "PostgresIdempotencyLedger",
    "PostgresSubscriptionRepository",
    "ensure_billing_schema",
    "managed_connection",
]
