"""Billing domain package: provider webhook ingestion and subscription reconciliation."""

from .config import BillingConfig, load_billing_config
from .decoder import decode_event, parse_provider_timestamp
from .exceptions import (
    ConcurrentUpdateError,
    DecodeError,
    EventInProgressError,
    ExpiredSignatureError,
    InvalidEventFormatError,
    LedgerError,
    MalformedSignatureError,
    SignatureError,
    SignatureMismatchError,
    SubscriptionStoreError,
    UnknownEventTypeError,
    WebhookError,
)
from .ledger import IdempotencyLedger, InMemoryIdempotencyLedger
from .models import (
    AdmissionResult,
    BillingAuditEvent,
    BillingAuditEventType,
    EventEnvelope,
    IdempotencyRecord,
    IdempotencyStatus,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionAggregate,
    WebhookDisposition,
    WebhookEventType,
    WebhookProcessingResult,
)
from .reconciler import reconcile
from .service import (
    BillingEventLogger,
    RepositoryTenantResolver,
    SubscriptionRepository,
    TenantResolver,
    WebhookProcessor,
)
from .signature import generate_signature_header, verify_signature

__all__ = [
    "AdmissionResult",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingConfig",
    "BillingEventLogger",
    "ConcurrentUpdateError",
    "DecodeError",
    "EventEnvelope",
    "EventInProgressError",
    "ExpiredSignatureError",
    "IdempotencyLedger",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "InMemoryIdempotencyLedger",
    "InvalidEventFormatError",
    "LedgerError",
    "MalformedSignatureError",
    "ReconcileOutcome",
    "ReconcileResult",
    "RepositoryTenantResolver",
    "SignatureError",
    "SignatureMismatchError",
    "SubscriptionAggregate",
    "SubscriptionRepository",
    "SubscriptionStoreError",
    "TenantResolver",
    "UnknownEventTypeError",
    "WebhookDisposition",
    "WebhookError",
    "WebhookEventType",
    "WebhookProcessingResult",
    "WebhookProcessor",
    "decode_event",
    "generate_signature_header",
    "load_billing_config",
    "parse_provider_timestamp",
    "reconcile",
    "verify_signature",
]
