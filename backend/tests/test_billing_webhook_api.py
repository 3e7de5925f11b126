from __future__ import annotations

import asyncio
import json
from typing import Optional

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from backend.app.billing import (
    ConcurrentUpdateError,
    EventInProgressError,
    ExpiredSignatureError,
    InMemoryIdempotencyLedger,
    InvalidEventFormatError,
    LedgerError,
    SubscriptionAggregate,
    SubscriptionStoreError,
    WebhookDisposition,
    WebhookProcessingResult,
    WebhookProcessor,
    generate_signature_header,
)
from backend.app.entitlements import InMemoryEntitlementSnapshotStore, PlanLimitEnforcer
from backend.app.routes import billing as billing_routes
from backend.app.schemas.billing import WebhookAcknowledgement

SECRET = "whsec_api"


def _request(body: bytes, signature: Optional[str], header_name: str = "stripe-signature") -> Request:
    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    headers = [(b"content-type", b"application/json")]
    if signature is not None:
        headers.append((header_name.lower().encode("latin-1"), signature.encode("latin-1")))
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/billing/webhook",
        "headers": headers,
        "query_string": b"",
    }
    return Request(scope, receive)


def _call(body: bytes, signature: Optional[str], header_name: str = "stripe-signature") -> WebhookAcknowledgement:
    return asyncio.run(billing_routes.receive_webhook(_request(body, signature, header_name)))


class FakeRepository:
    def __init__(self) -> None:
        self.subscriptions = {}

    def get_subscription(self, tenant_id: str) -> Optional[SubscriptionAggregate]:
        return self.subscriptions.get(tenant_id)

    def save_subscription(self, aggregate: SubscriptionAggregate, *, expected_version: int) -> SubscriptionAggregate:
        persisted = aggregate.model_copy(update={"version": expected_version + 1})
        self.subscriptions[aggregate.tenant_id] = persisted
        return persisted

    def find_tenant_id(self, *, customer_id, subscription_id) -> Optional[str]:
        return None


class NullLogger:
    def log(self, event) -> None:
        return None


class NullNotifier:
    def notify_entitlements_changed(self, previous, current) -> None:
        return None


class RaisingProcessor:
    signature_header = "Stripe-Signature"

    def __init__(self, error: Exception) -> None:
        self.error = error

    def process(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookProcessingResult:
        raise self.error


@pytest.fixture
def processor(monkeypatch) -> WebhookProcessor:
    processor = WebhookProcessor(
        ledger=InMemoryIdempotencyLedger(),
        subscriptions=FakeRepository(),
        enforcer=PlanLimitEnforcer(InMemoryEntitlementSnapshotStore(), NullNotifier()),
        event_logger=NullLogger(),
        signing_secret=SECRET,
    )
    monkeypatch.setattr(billing_routes, "get_webhook_processor", lambda: processor)
    return processor


def _signed_checkout() -> tuple:
    body = json.dumps(
        {
            "id": "evt_api_1",
            "type": "checkout.session.completed",
            "created": 1_700_000_000,
            "data": {"object": {"client_reference_id": "tenant-9", "metadata": {"plan": "basic"}}},
        }
    ).encode("utf-8")
    return body, generate_signature_header(body, SECRET)


def test_receive_webhook_applies_event(processor):
    body, signature = _signed_checkout()

    response = _call(body, signature)

    assert response.received is True
    assert response.event_id == "evt_api_1"
    assert response.disposition == WebhookDisposition.APPLIED
    assert response.entitlements.limits["maxUsers"] == 5
    assert response.model_dump(by_alias=True)["eventId"] == "evt_api_1"


def test_receive_webhook_acknowledges_duplicates(processor):
    body, signature = _signed_checkout()
    _call(body, signature)

    response = _call(body, signature)

    assert response.disposition == WebhookDisposition.DUPLICATE
    assert response.entitlements is None


def test_missing_signature_header_is_bad_request(processor):
    body, _ = _signed_checkout()

    with pytest.raises(HTTPException) as exc:
        _call(body, None)

    assert exc.value.status_code == 400


def test_empty_body_is_bad_request(processor):
    with pytest.raises(HTTPException) as exc:
        _call(b"", "t=1,v1=abc")

    assert exc.value.status_code == 400


def test_forged_signature_is_bad_request(processor):
    body, _ = _signed_checkout()
    forged = generate_signature_header(body, "whsec_other")

    with pytest.raises(HTTPException) as exc:
        _call(body, forged)

    assert exc.value.status_code == 400
    assert exc.value.detail == "signature_mismatch"


@pytest.mark.parametrize(
    "error, status_code",
    [
        (ExpiredSignatureError("old"), 400),
        (InvalidEventFormatError("bad json"), 400),
        (EventInProgressError("evt_1"), 409),
        (LedgerError("down"), 503),
        (SubscriptionStoreError("down"), 503),
        (ConcurrentUpdateError("tenant-1", 3), 503),
    ],
)
def test_processing_errors_map_to_status_codes(monkeypatch, error, status_code):
    monkeypatch.setattr(billing_routes, "get_webhook_processor", lambda: RaisingProcessor(error))

    with pytest.raises(HTTPException) as exc:
        _call(b'{"id": "evt_1"}', "t=1,v1=abc")

    assert exc.value.status_code == status_code


def test_signature_header_name_is_configurable(processor, monkeypatch):
    monkeypatch.setattr(processor, "signature_header", "X-Provider-Signature")
    body, signature = _signed_checkout()

    with pytest.raises(HTTPException) as exc:
        _call(body, signature)
    assert exc.value.status_code == 400

    response = _call(body, signature, header_name="X-Provider-Signature")
    assert response.disposition == WebhookDisposition.APPLIED
