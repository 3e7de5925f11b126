"""Webhook processing engine: verify, decode, admit, reconcile and enforce."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol

from ..entitlements.models import PlanTier, SubscriptionStatus
from ..entitlements.service import PlanLimitEnforcer
from .decoder import decode_event
from .exceptions import (
    ConcurrentUpdateError,
    EventInProgressError,
    InvalidEventFormatError,
    MalformedSignatureError,
    SignatureError,
    UnknownEventTypeError,
)
from .ledger import IdempotencyLedger
from .models import (
    AdmissionResult,
    BillingAuditEvent,
    BillingAuditEventType,
    EventEnvelope,
    ReconcileOutcome,
    SubscriptionAggregate,
    WebhookDisposition,
    WebhookEventType,
    WebhookProcessingResult,
)
from .reconciler import provider_references, reconcile, tenant_id_hint
from .signature import DEFAULT_TOLERANCE_SECONDS, verify_signature

logger = logging.getLogger("billing")


class SubscriptionRepository(Protocol):
    """Persistence operations for subscription aggregates."""

    def get_subscription(self, tenant_id: str) -> Optional[SubscriptionAggregate]:
        ...

    def save_subscription(
        self,
        aggregate: SubscriptionAggregate,
        *,
        expected_version: int,
    ) -> SubscriptionAggregate:
        """Persist ``aggregate`` only if the stored version equals ``expected_version``.

        Returns the stored aggregate with its new version, or raises
        :class:`ConcurrentUpdateError`.
        """

    def find_tenant_id(
        self,
        *,
        customer_id: Optional[str],
        subscription_id: Optional[str],
    ) -> Optional[str]:
        ...


class TenantResolver(Protocol):
    """Maps an event to the tenant whose subscription it concerns."""

    def resolve_tenant_id(self, event: EventEnvelope) -> Optional[str]:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class RepositoryTenantResolver:
    """Resolves tenants from checkout metadata, then from provider ids."""

    def __init__(self, repository: SubscriptionRepository) -> None:
        self._repository = repository

    def resolve_tenant_id(self, event: EventEnvelope) -> Optional[str]:
        hinted = tenant_id_hint(event)
        if hinted:
            return hinted
        customer_id, subscription_id = provider_references(event)
        if not customer_id and not subscription_id:
            return None
        return self._repository.find_tenant_id(customer_id=customer_id, subscription_id=subscription_id)


def audit_event_type(
    previous: SubscriptionAggregate,
    updated: SubscriptionAggregate,
    event_type: WebhookEventType,
) -> BillingAuditEventType:
    """Classify an applied transition for the audit trail."""

    if updated.status == SubscriptionStatus.CANCELLED:
        return BillingAuditEventType.SUBSCRIPTION_CANCELLED
    if updated.status == SubscriptionStatus.PAST_DUE:
        return BillingAuditEventType.PAYMENT_FAILED
    if previous.status == SubscriptionStatus.PAST_DUE:
        return BillingAuditEventType.PAYMENT_RECOVERED
    if previous.status == SubscriptionStatus.ACTIVE and event_type == WebhookEventType.SUBSCRIPTION_UPDATED:
        return BillingAuditEventType.SUBSCRIPTION_UPDATED
    return BillingAuditEventType.SUBSCRIPTION_ACTIVATED


@dataclass
class WebhookProcessor:
    """Applies each provider event to tenant subscriptions exactly once."""

    ledger: IdempotencyLedger
    subscriptions: SubscriptionRepository
    enforcer: PlanLimitEnforcer
    event_logger: BillingEventLogger
    signing_secret: str
    tenant_resolver: Optional[TenantResolver] = None
    signature_header: str = "Stripe-Signature"
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS
    max_reconcile_attempts: int = 5
    price_tiers: Dict[str, PlanTier] = field(default_factory=dict)
    clock: Callable[[], float] = time.time

    def __post_init__(self) -> None:
        if not self.signing_secret:
            raise ValueError("signing_secret must be provided")
        if self.max_reconcile_attempts < 1:
            raise ValueError("max_reconcile_attempts must be >= 1")
        if self.tenant_resolver is None:
            self.tenant_resolver = RepositoryTenantResolver(self.subscriptions)

    def process(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookProcessingResult:
        """Handle one delivery.

        Returns a result for every delivery that should be acknowledged,
        including duplicates, stale and ignored events. Raises for deliveries
        the provider must retry; rejections before admission leave no ledger
        record behind.
        """

        if not signature_header:
            raise MalformedSignatureError("Missing signature header")
        if not raw_body:
            raise InvalidEventFormatError("Event body is empty")

        try:
            verify_signature(
                raw_body,
                signature_header,
                self.signing_secret,
                tolerance_seconds=self.tolerance_seconds,
                now=self.clock(),
            )
        except SignatureError as exc:
            logger.warning("Rejected webhook delivery: %s", exc.code)
            raise

        try:
            event = decode_event(raw_body)
        except UnknownEventTypeError as exc:
            logger.info("Acknowledging unhandled event type %s (%s)", exc.event_type, exc.event_id)
            return WebhookProcessingResult(
                event_id=exc.event_id,
                event_type=exc.event_type,
                disposition=WebhookDisposition.UNHANDLED_TYPE,
            )
        except InvalidEventFormatError as exc:
            logger.warning("Rejected malformed webhook event: %s", exc)
            raise

        admission = self.ledger.try_begin(event.event_id)
        if admission == AdmissionResult.ALREADY_APPLIED:
            logger.info("Duplicate delivery of event %s acknowledged", event.event_id)
            return WebhookProcessingResult(
                event_id=event.event_id,
                event_type=event.event_type.value,
                disposition=WebhookDisposition.DUPLICATE,
            )
        if admission == AdmissionResult.IN_PROGRESS:
            logger.info("Event %s is already being processed", event.event_id)
            raise EventInProgressError(event.event_id)

        try:
            result = self._apply(event)
        except Exception:
            logger.exception("Failed to apply event %s (%s)", event.event_id, event.event_type.value)
            self._release(event.event_id)
            raise

        self.ledger.mark_applied(event.event_id)
        return result

    def _apply(self, event: EventEnvelope) -> WebhookProcessingResult:
        tenant_id = self.tenant_resolver.resolve_tenant_id(event)
        if tenant_id is None:
            logger.warning("No tenant found for event %s (%s); ignoring", event.event_id, event.event_type.value)
            return self._result(event, WebhookDisposition.IGNORED)

        last_error: Optional[ConcurrentUpdateError] = None
        for attempt in range(1, self.max_reconcile_attempts + 1):
            stored = self.subscriptions.get_subscription(tenant_id)
            current = stored or SubscriptionAggregate.initial(tenant_id)
            updated, outcome = reconcile(current, event, price_tiers=self.price_tiers)

            if outcome != ReconcileOutcome.APPLIED:
                logger.info(
                    "Event %s (%s) %s for tenant %s in status %s",
                    event.event_id,
                    event.event_type.value,
                    outcome.value,
                    tenant_id,
                    current.status.value,
                )
                snapshot = None
                if stored is not None:
                    # A retry after a failed enforcement lands here as stale.
                    snapshot = self.enforcer.ensure_current(stored)
                return self._result(
                    event,
                    WebhookDisposition(outcome.value),
                    tenant_id=tenant_id,
                    snapshot=snapshot,
                )

            try:
                persisted = self.subscriptions.save_subscription(updated, expected_version=current.version)
            except ConcurrentUpdateError as exc:
                logger.info(
                    "Concurrent update for tenant %s on attempt %s; retrying event %s",
                    tenant_id,
                    attempt,
                    event.event_id,
                )
                last_error = exc
                continue

            snapshot = self.enforcer.enforce(persisted)
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=audit_event_type(current, persisted, event.event_type),
                    tenant_id=tenant_id,
                    source_event_id=event.event_id,
                    previous_status=current.status,
                    status=persisted.status,
                    plan_tier=persisted.plan_tier,
                )
            )
            return self._result(event, WebhookDisposition.APPLIED, tenant_id=tenant_id, snapshot=snapshot)

        assert last_error is not None
        raise last_error

    def _release(self, event_id: str) -> None:
        try:
            self.ledger.mark_failed(event_id)
        except Exception:
            # The record stays in progress and is reclaimed after the timeout.
            logger.exception("Unable to mark event %s as failed", event_id)

    @staticmethod
    def _result(
        event: EventEnvelope,
        disposition: WebhookDisposition,
        *,
        tenant_id: Optional[str] = None,
        snapshot=None,
    ) -> WebhookProcessingResult:
        return WebhookProcessingResult(
            event_id=event.event_id,
            event_type=event.event_type.value,
            disposition=disposition,
            tenant_id=tenant_id,
            snapshot=snapshot,
        )


__all__ = [
    "BillingEventLogger",
    "RepositoryTenantResolver",
    "SubscriptionRepository",
    "TenantResolver",
    "WebhookProcessor",
    "audit_event_type",
]
