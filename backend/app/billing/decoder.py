"""Parsing of verified webhook bodies into event envelopes."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

from pydantic import ValidationError

from .exceptions import InvalidEventFormatError, UnknownEventTypeError
from .models import EventEnvelope, WebhookEventType

_KNOWN_EVENT_TYPES = {event_type.value for event_type in WebhookEventType}


def parse_provider_timestamp(value: object) -> Optional[datetime]:
    """Normalize a provider timestamp into an aware UTC datetime.

    Accepts datetimes, unix seconds (int/float or digit strings) and ISO-8601
    strings. Returns ``None`` for empty values.
    """

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise TypeError("Unsupported timestamp value")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(stripped), tz=timezone.utc)
        parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported timestamp value")


def _require_mapping(value: object, name: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise InvalidEventFormatError(f"Event field {name!r} must be an object")
    return value


def _require_string(body: Mapping[str, object], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidEventFormatError(f"Event field {name!r} must be a non-empty string")
    return value.strip()


def decode_event(raw_body: bytes) -> EventEnvelope:
    """Decode a raw provider body into an :class:`EventEnvelope`.

    Raises :class:`InvalidEventFormatError` for malformed input and
    :class:`UnknownEventTypeError` for event types this consumer does not
    handle; the latter is expected to be acknowledged and ignored.
    """

    if not raw_body:
        raise InvalidEventFormatError("Event body is empty")
    try:
        body = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise InvalidEventFormatError("Event body is not valid JSON") from exc

    body = _require_mapping(body, "<root>")
    event_id = _require_string(body, "id")
    event_type = _require_string(body, "type")
    # Unhandled types are acknowledged whatever shape their payload takes.
    if event_type not in _KNOWN_EVENT_TYPES:
        raise UnknownEventTypeError(event_id, event_type)

    try:
        occurred_at = parse_provider_timestamp(body.get("created"))
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise InvalidEventFormatError("Event field 'created' is not a valid timestamp") from exc
    if occurred_at is None:
        raise InvalidEventFormatError("Event field 'created' is required")

    data = _require_mapping(body.get("data"), "data")
    payload: Dict[str, object] = dict(_require_mapping(data.get("object"), "data.object"))

    try:
        return EventEnvelope(
            event_id=event_id,
            event_type=WebhookEventType(event_type),
            occurred_at=occurred_at,
            payload=payload,
        )
    except ValidationError as exc:  # pragma: no cover - guarded by checks above
        raise InvalidEventFormatError(str(exc)) from exc


__all__ = ["decode_event", "parse_provider_timestamp"]
