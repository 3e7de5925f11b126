"""Pure state machine applying provider events to subscription aggregates.

Transitions are an explicit table keyed by ``(current status, event type)``.
Any pair missing from the table is ignored rather than treated as an error,
since the provider may add event types or send them in unexpected states.
"""
from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional, Tuple

from ..entitlements.models import PlanTier, SubscriptionStatus
from .decoder import parse_provider_timestamp
from .models import (
    EventEnvelope,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionAggregate,
    WebhookEventType,
)

PriceTiers = Mapping[str, PlanTier]
Transition = Callable[[SubscriptionAggregate, EventEnvelope, PriceTiers], Optional[SubscriptionAggregate]]

_PLAN_METADATA_KEYS = ("plan", "planTier", "plan_tier")


def _reference_id(value: object) -> Optional[str]:
    """Return the id of a provider reference given as a string or expanded object."""

    if isinstance(value, str) and value:
        return value
    if isinstance(value, Mapping):
        nested = value.get("id")
        if isinstance(nested, str) and nested:
            return nested
    return None


def _metadata(payload: Mapping[str, object]) -> Mapping[str, object]:
    metadata = payload.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def provider_references(event: EventEnvelope) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(customer id, subscription id)`` referenced by an event."""

    payload = event.payload
    customer_id = _reference_id(payload.get("customer"))
    if event.event_type in {WebhookEventType.SUBSCRIPTION_UPDATED, WebhookEventType.SUBSCRIPTION_CANCELLED}:
        subscription_id = _reference_id(payload.get("id"))
    else:
        subscription_id = _reference_id(payload.get("subscription"))
    return customer_id, subscription_id


def tenant_id_hint(event: EventEnvelope) -> Optional[str]:
    """Return the tenant id stamped into the event metadata at checkout, if any."""

    metadata = _metadata(event.payload)
    for key in ("tenantId", "tenant_id"):
        value = metadata.get(key)
        if isinstance(value, str) and value:
            return value
    value = event.payload.get("client_reference_id")
    return value if isinstance(value, str) and value else None


def _price_ids(payload: Mapping[str, object]):
    items = payload.get("items")
    if isinstance(items, Mapping) and isinstance(items.get("data"), list):
        for item in items["data"]:
            if isinstance(item, Mapping):
                price_id = _reference_id(item.get("price"))
                if price_id:
                    yield price_id
    for key in ("plan", "price"):
        price_id = _reference_id(payload.get(key))
        if price_id:
            yield price_id
    price_id = payload.get("price_id")
    if isinstance(price_id, str) and price_id:
        yield price_id


def _as_tier(value: object) -> Optional[PlanTier]:
    if not isinstance(value, str):
        return None
    try:
        return PlanTier(value.strip().lower())
    except ValueError:
        return None


def resolve_plan_tier(payload: Mapping[str, object], price_tiers: PriceTiers) -> Optional[PlanTier]:
    """Find the plan tier an event refers to, or ``None`` when it names none."""

    metadata = _metadata(payload)
    for key in _PLAN_METADATA_KEYS:
        tier = _as_tier(metadata.get(key))
        if tier is not None:
            return tier
    for price_id in _price_ids(payload):
        if price_id in price_tiers:
            return price_tiers[price_id]
    return _as_tier(payload.get("plan_tier"))


def _period_end(payload: Mapping[str, object], current: SubscriptionAggregate):
    for key in ("current_period_end", "period_end"):
        try:
            parsed = parse_provider_timestamp(payload.get(key))
        except (TypeError, ValueError, OverflowError, OSError):
            parsed = None
        if parsed is not None:
            return parsed
    return current.current_period_end


def _advance(current: SubscriptionAggregate, event: EventEnvelope, **changes: object) -> SubscriptionAggregate:
    customer_id, subscription_id = provider_references(event)
    update: Dict[str, object] = {
        "last_applied_event_at": event.occurred_at,
        "provider_customer_id": customer_id or current.provider_customer_id,
        "provider_subscription_id": subscription_id or current.provider_subscription_id,
    }
    update.update(changes)
    return current.model_copy(update=update)


def _activate_from_checkout(
    current: SubscriptionAggregate, event: EventEnvelope, price_tiers: PriceTiers
) -> Optional[SubscriptionAggregate]:
    plan_tier = resolve_plan_tier(event.payload, price_tiers)
    if plan_tier is None:
        return None
    return _advance(
        current,
        event,
        status=SubscriptionStatus.ACTIVE,
        plan_tier=plan_tier,
        current_period_end=_period_end(event.payload, current),
    )


def _update_subscription(
    current: SubscriptionAggregate, event: EventEnvelope, price_tiers: PriceTiers
) -> Optional[SubscriptionAggregate]:
    plan_tier = resolve_plan_tier(event.payload, price_tiers) or current.plan_tier
    return _advance(
        current,
        event,
        plan_tier=plan_tier,
        current_period_end=_period_end(event.payload, current),
    )


def _mark_past_due(
    current: SubscriptionAggregate, event: EventEnvelope, price_tiers: PriceTiers
) -> Optional[SubscriptionAggregate]:
    return _advance(current, event, status=SubscriptionStatus.PAST_DUE)


def _recover_payment(
    current: SubscriptionAggregate, event: EventEnvelope, price_tiers: PriceTiers
) -> Optional[SubscriptionAggregate]:
    return _advance(
        current,
        event,
        status=SubscriptionStatus.ACTIVE,
        current_period_end=_period_end(event.payload, current),
    )


def _cancel(
    current: SubscriptionAggregate, event: EventEnvelope, price_tiers: PriceTiers
) -> Optional[SubscriptionAggregate]:
    return _advance(current, event, status=SubscriptionStatus.CANCELLED)


TRANSITIONS: Dict[Tuple[SubscriptionStatus, WebhookEventType], Transition] = {
    (SubscriptionStatus.INCOMPLETE, WebhookEventType.CHECKOUT_COMPLETED): _activate_from_checkout,
    (SubscriptionStatus.ACTIVE, WebhookEventType.SUBSCRIPTION_UPDATED): _update_subscription,
    (SubscriptionStatus.ACTIVE, WebhookEventType.INVOICE_PAYMENT_FAILED): _mark_past_due,
    (SubscriptionStatus.PAST_DUE, WebhookEventType.CHECKOUT_COMPLETED): _activate_from_checkout,
    (SubscriptionStatus.PAST_DUE, WebhookEventType.INVOICE_PAYMENT_SUCCEEDED): _recover_payment,
    (SubscriptionStatus.ACTIVE, WebhookEventType.SUBSCRIPTION_CANCELLED): _cancel,
    (SubscriptionStatus.PAST_DUE, WebhookEventType.SUBSCRIPTION_CANCELLED): _cancel,
    # Cancellation is terminal except for a fresh checkout.
    (SubscriptionStatus.CANCELLED, WebhookEventType.CHECKOUT_COMPLETED): _activate_from_checkout,
}


def is_stale(current: SubscriptionAggregate, event: EventEnvelope) -> bool:
    """Return whether ``event`` is not newer than the last applied event."""

    high_water_mark = current.last_applied_event_at
    return high_water_mark is not None and event.occurred_at <= high_water_mark


def reconcile(
    current: SubscriptionAggregate,
    event: EventEnvelope,
    *,
    price_tiers: Optional[PriceTiers] = None,
) -> ReconcileResult:
    """Apply ``event`` to ``current`` and classify the outcome.

    The function is pure: identical inputs always produce identical results and
    nothing outside the returned aggregate is touched.
    """

    if is_stale(current, event):
        return ReconcileResult(current, ReconcileOutcome.STALE)

    transition = TRANSITIONS.get((current.status, event.event_type))
    if transition is None:
        return ReconcileResult(current, ReconcileOutcome.IGNORED)

    updated = transition(current, event, price_tiers or {})
    if updated is None:
        return ReconcileResult(current, ReconcileOutcome.IGNORED)
    return ReconcileResult(updated, ReconcileOutcome.APPLIED)


__all__ = [
    "TRANSITIONS",
    "is_stale",
    "provider_references",
    "reconcile",
    "resolve_plan_tier",
    "tenant_id_hint",
]
