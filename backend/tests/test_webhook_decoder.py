from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from backend.app.billing import (
    InvalidEventFormatError,
    UnknownEventTypeError,
    WebhookEventType,
    decode_event,
    parse_provider_timestamp,
)


def _body(**overrides) -> bytes:
    event = {
        "id": "evt_123",
        "type": "checkout.session.completed",
        "created": 1_700_000_000,
        "data": {"object": {"customer": "cus_1", "metadata": {"tenantId": "tenant-1"}}},
    }
    event.update(overrides)
    return json.dumps(event).encode("utf-8")


def test_decode_event_builds_envelope() -> None:
    event = decode_event(_body())

    assert event.event_id == "evt_123"
    assert event.event_type == WebhookEventType.CHECKOUT_COMPLETED
    assert event.occurred_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert event.payload["customer"] == "cus_1"


def test_decode_event_accepts_iso_created_timestamp() -> None:
    event = decode_event(_body(created="2024-03-01T12:00:00Z"))

    assert event.occurred_at == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_decode_event_reports_unknown_type_with_identity() -> None:
    with pytest.raises(UnknownEventTypeError) as exc:
        decode_event(_body(type="customer.created"))

    assert exc.value.event_id == "evt_123"
    assert exc.value.event_type == "customer.created"
    assert exc.value.code == "event_unknown_type"


@pytest.mark.parametrize(
    "raw_body",
    [
        b"",
        b"not json",
        b"\xff\xfe",
        b"[1, 2, 3]",
        _body(id=""),
        _body(id=42),
        _body(type=None),
        _body(created=None),
        _body(created="sometime"),
        _body(data=[]),
        _body(data={"object": "nope"}),
    ],
)
def test_decode_event_rejects_malformed_bodies(raw_body: bytes) -> None:
    with pytest.raises(InvalidEventFormatError):
        decode_event(raw_body)


@pytest.mark.parametrize(
    "overrides",
    [
        {"data": None},
        {"data": {"object": ["not", "a", "mapping"]}},
        {"created": "yesterday"},
    ],
)
def test_unknown_type_is_reported_regardless_of_payload_shape(overrides) -> None:
    with pytest.raises(UnknownEventTypeError) as exc:
        decode_event(_body(type="payout.paid", **overrides))

    assert exc.value.event_type == "payout.paid"


def test_known_type_with_missing_data_is_invalid() -> None:
    with pytest.raises(InvalidEventFormatError):
        decode_event(_body(data=None))


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, None),
        ("", None),
        (0, datetime(1970, 1, 1, tzinfo=timezone.utc)),
        ("60", datetime(1970, 1, 1, 0, 1, tzinfo=timezone.utc)),
        ("2024-01-01T00:00:00+00:00", datetime(2024, 1, 1, tzinfo=timezone.utc)),
        (datetime(2024, 1, 1), datetime(2024, 1, 1, tzinfo=timezone.utc)),
    ],
)
def test_parse_provider_timestamp(value, expected) -> None:
    assert parse_provider_timestamp(value) == expected


def test_parse_provider_timestamp_rejects_booleans() -> None:
    with pytest.raises(TypeError):
        parse_provider_timestamp(True)
