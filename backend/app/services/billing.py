"""Application wiring for the webhook processing engine."""
from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from ..billing import BillingAuditEvent, BillingConfig, BillingEventLogger, WebhookProcessor, load_billing_config
from ..billing.repository import (
    PostgresEntitlementSnapshotStore,
    PostgresIdempotencyLedger,
    PostgresSubscriptionRepository,
)
from ..entitlements import EntitlementChangeNotifier, EntitlementSnapshot, PlanLimitEnforcer, build_plan_catalog

logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s tenant=%s source=%s status=%s->%s plan=%s",
            event.event_type.value,
            event.tenant_id,
            event.source_event_id,
            event.previous_status.value,
            event.status.value,
            event.plan_tier.value,
        )


class LoggingEntitlementNotifier(EntitlementChangeNotifier):
    """Emits entitlement changes to the application log until a broker exists."""

    def notify_entitlements_changed(
        self,
        previous: Optional[EntitlementSnapshot],
        current: EntitlementSnapshot,
    ) -> None:
        logger.info(
            "Entitlements for tenant %s now %s (was %s) limits=%s",
            current.tenant_id,
            current.plan_tier.value,
            previous.plan_tier.value if previous else "unset",
            current.limits.to_dict(),
        )


def build_webhook_processor(config: BillingConfig) -> WebhookProcessor:
    """Assemble the engine from its PostgreSQL-backed collaborators."""

    subscriptions = PostgresSubscriptionRepository()
    enforcer = PlanLimitEnforcer(
        PostgresEntitlementSnapshotStore(),
        LoggingEntitlementNotifier(),
        catalog=build_plan_catalog(config.plan_limit_overrides),
    )
    return WebhookProcessor(
        ledger=PostgresIdempotencyLedger(reclaim_after=timedelta(seconds=config.ledger_reclaim_seconds)),
        subscriptions=subscriptions,
        enforcer=enforcer,
        event_logger=LoggingBillingEventLogger(),
        signing_secret=config.webhook_secret,
        signature_header=config.signature_header,
        tolerance_seconds=config.tolerance_seconds,
        max_reconcile_attempts=config.max_reconcile_attempts,
        price_tiers=dict(config.price_tiers),
    )


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    return build_webhook_processor(get_billing_config())


__all__ = [
    "LoggingBillingEventLogger",
    "LoggingEntitlementNotifier",
    "build_webhook_processor",
    "get_billing_config",
    "get_webhook_processor",
]
