"""Exceptions raised while ingesting provider webhooks."""
from __future__ import annotations

from typing import Optional


class WebhookError(Exception):
    """Base class for webhook ingestion failures."""

    code = "webhook_error"


class SignatureError(WebhookError):
    """The delivery could not be authenticated. Never mutates state."""

    code = "signature_invalid"


class MalformedSignatureError(SignatureError):
    """The signature header cannot be parsed into timestamp and signatures."""

    code = "signature_malformed"


class ExpiredSignatureError(SignatureError):
    """The signed timestamp falls outside the replay tolerance window."""

    code = "signature_expired"


class SignatureMismatchError(SignatureError):
    """No signature in the header matches the computed digest."""

    code = "signature_mismatch"


class DecodeError(WebhookError):
    """The verified body could not be turned into an event envelope."""

    code = "event_invalid"


class InvalidEventFormatError(DecodeError):
    """The body is not a well-formed provider event."""

    code = "event_invalid_format"


class UnknownEventTypeError(DecodeError):
    """The event type is not handled by this consumer."""

    code = "event_unknown_type"

    def __init__(self, event_id: str, event_type: str) -> None:
        super().__init__(f"Unhandled event type {event_type!r} for event {event_id}")
        self.event_id = event_id
        self.event_type = event_type


class LedgerError(WebhookError):
    """The idempotency ledger is unavailable. Retryable."""

    code = "ledger_unavailable"


class SubscriptionStoreError(WebhookError):
    """The subscription or snapshot store is unavailable. Retryable."""

    code = "subscription_store_unavailable"


class ConcurrentUpdateError(WebhookError):
    """A conditional write lost the race against another writer."""

    code = "concurrent_update"

    def __init__(self, tenant_id: str, expected_version: int, actual_version: Optional[int] = None) -> None:
        super().__init__(
            f"Subscription for tenant {tenant_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.tenant_id = tenant_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class EventInProgressError(WebhookError):
    """Another delivery of the same event is currently being processed."""

    code = "event_in_progress"

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event {event_id} is already being processed")
        self.event_id = event_id
