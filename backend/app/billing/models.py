"""Domain models for webhook ingestion and subscription reconciliation."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import EntitlementSnapshot, PlanTier, SubscriptionStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class WebhookEventType(str, Enum):
    """Provider event types that the reconciler reacts to."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_CANCELLED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


class EventEnvelope(BaseModel):
    """Decoded, typed representation of one webhook delivery."""

    event_id: str = Field(min_length=1, description="Provider event id; the idempotency key")
    event_type: WebhookEventType
    occurred_at: datetime = Field(description="Provider timestamp used for ordering only")
    payload: Dict[str, object] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("occurred_at")
    @classmethod
    def _aware_occurred_at(cls, value: datetime) -> datetime:
        return _ensure_aware(value)


class IdempotencyStatus(str, Enum):
    """Processing state of a ledger record."""

    IN_PROGRESS = "in_progress"
    APPLIED = "applied"
    FAILED = "failed"


class AdmissionResult(str, Enum):
    """Answer of the ledger's admission gate."""

    ADMITTED = "admitted"
    ALREADY_APPLIED = "already_applied"
    IN_PROGRESS = "in_progress"


class IdempotencyRecord(BaseModel):
    """One record per distinct event id ever seen."""

    event_id: str
    status: IdempotencyStatus
    first_seen_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    applied_at: Optional[datetime] = None
    attempts: int = Field(default=1, ge=1)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionAggregate(BaseModel):
    """Authoritative subscription state for one tenant."""

    tenant_id: str
    plan_tier: PlanTier = PlanTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    current_period_end: Optional[datetime] = None
    last_applied_event_at: Optional[datetime] = None
    version: int = Field(default=0, ge=0)
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("current_period_end", "last_applied_event_at")
    @classmethod
    def _aware_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_aware(value)

    @classmethod
    def initial(cls, tenant_id: str) -> "SubscriptionAggregate":
        """Return the state of a tenant that never completed a checkout."""
        return cls(tenant_id=tenant_id)

    @property
    def is_past_due(self) -> bool:
        return self.status == SubscriptionStatus.PAST_DUE


class ReconcileOutcome(str, Enum):
    """Result classification of a reconciliation step."""

    APPLIED = "applied"
    STALE = "stale"
    IGNORED = "ignored"


class ReconcileResult(NamedTuple):
    aggregate: SubscriptionAggregate
    outcome: ReconcileOutcome


class WebhookDisposition(str, Enum):
    """How a delivery was handled; every value is acknowledged to the provider."""

    APPLIED = "applied"
    STALE = "stale"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    UNHANDLED_TYPE = "unhandled_type"


class WebhookProcessingResult(BaseModel):
    """Summary returned to the ingress once a delivery is acknowledged."""

    event_id: Optional[str] = None
    event_type: Optional[str] = None
    disposition: WebhookDisposition
    tenant_id: Optional[str] = None
    snapshot: Optional[EntitlementSnapshot] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BillingAuditEventType
    tenant_id: str
    source_event_id: str
    previous_status: SubscriptionStatus
    status: SubscriptionStatus
    plan_tier: PlanTier
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)
