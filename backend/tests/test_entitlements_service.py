from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple

import pytest

from backend.app.billing import SubscriptionAggregate
from backend.app.entitlements import (
    PLAN_CATALOG,
    UNLIMITED,
    EntitlementSnapshot,
    InMemoryEntitlementSnapshotStore,
    LimitedResource,
    PlanLimitEnforcer,
    PlanLimits,
    PlanTier,
    SubscriptionStatus,
    build_plan_catalog,
    derive_entitlements,
)

FIXED_NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: List[Tuple[Optional[EntitlementSnapshot], EntitlementSnapshot]] = []

    def notify_entitlements_changed(
        self,
        previous: Optional[EntitlementSnapshot],
        current: EntitlementSnapshot,
    ) -> None:
        self.calls.append((previous, current))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> InMemoryEntitlementSnapshotStore:
    return InMemoryEntitlementSnapshotStore()


@pytest.fixture
def enforcer(store, notifier) -> PlanLimitEnforcer:
    return PlanLimitEnforcer(store, notifier, clock=lambda: FIXED_NOW)


def _aggregate(status: SubscriptionStatus, plan_tier: PlanTier = PlanTier.PRO) -> SubscriptionAggregate:
    return SubscriptionAggregate(tenant_id="tenant-1", plan_tier=plan_tier, status=status, version=1)


def test_active_subscription_receives_plan_limits():
    snapshot = derive_entitlements(_aggregate(SubscriptionStatus.ACTIVE))

    assert snapshot.plan_tier == PlanTier.PRO
    assert snapshot.limits == PLAN_CATALOG[PlanTier.PRO].limits
    assert snapshot.limits.max_products == UNLIMITED


def test_past_due_keeps_plan_limits_during_grace():
    snapshot = derive_entitlements(_aggregate(SubscriptionStatus.PAST_DUE, PlanTier.BASIC))

    assert snapshot.plan_tier == PlanTier.BASIC
    assert snapshot.subscription_status == SubscriptionStatus.PAST_DUE
    assert snapshot.limits.max_users == 5


@pytest.mark.parametrize("status", [SubscriptionStatus.CANCELLED, SubscriptionStatus.INCOMPLETE])
def test_inactive_subscriptions_collapse_to_free(status):
    snapshot = derive_entitlements(_aggregate(status, PlanTier.ENTERPRISE))

    assert snapshot.plan_tier == PlanTier.FREE
    assert snapshot.subscribed_tier == PlanTier.ENTERPRISE
    assert snapshot.limits == PlanLimits()


def test_enforce_persists_and_notifies_on_first_snapshot(enforcer, store, notifier):
    snapshot = enforcer.enforce(_aggregate(SubscriptionStatus.ACTIVE))

    assert store.get_snapshot("tenant-1") == snapshot
    assert snapshot.computed_at == FIXED_NOW
    assert len(notifier.calls) == 1
    previous, current = notifier.calls[0]
    assert previous is None
    assert current.plan_tier == PlanTier.PRO


def test_enforce_skips_notification_when_access_unchanged(enforcer, notifier):
    enforcer.enforce(_aggregate(SubscriptionStatus.ACTIVE))
    enforcer.enforce(_aggregate(SubscriptionStatus.ACTIVE))

    assert len(notifier.calls) == 1


def test_enforce_notifies_on_downgrade(enforcer, notifier):
    enforcer.enforce(_aggregate(SubscriptionStatus.ACTIVE))
    snapshot = enforcer.enforce(_aggregate(SubscriptionStatus.CANCELLED))

    assert snapshot.plan_tier == PlanTier.FREE
    assert len(notifier.calls) == 2
    previous, current = notifier.calls[1]
    assert previous.plan_tier == PlanTier.PRO
    assert current.limits.limit_for(LimitedResource.WAREHOUSES) == 1


def test_grace_period_change_is_broadcast(enforcer, notifier):
    enforcer.enforce(_aggregate(SubscriptionStatus.ACTIVE))
    enforcer.enforce(_aggregate(SubscriptionStatus.PAST_DUE))

    assert len(notifier.calls) == 2
    assert notifier.calls[1][1].subscription_status == SubscriptionStatus.PAST_DUE


def test_current_snapshot_rebuilds_missing_entries(enforcer, store, notifier):
    aggregate = _aggregate(SubscriptionStatus.ACTIVE, PlanTier.BASIC)

    snapshot = enforcer.current_snapshot(aggregate)
    assert snapshot.plan_tier == PlanTier.BASIC

    store.discard("tenant-1")
    assert enforcer.current_snapshot(aggregate).plan_tier == PlanTier.BASIC
    assert len(notifier.calls) == 2


def test_ensure_current_keeps_matching_snapshot(enforcer, store, notifier):
    aggregate = _aggregate(SubscriptionStatus.ACTIVE)
    original = enforcer.enforce(aggregate)

    assert enforcer.ensure_current(aggregate) is original
    assert store.get_snapshot("tenant-1") is original
    assert len(notifier.calls) == 1


def test_ensure_current_repairs_outdated_snapshot(enforcer, store, notifier):
    enforcer.enforce(_aggregate(SubscriptionStatus.ACTIVE))

    snapshot = enforcer.ensure_current(_aggregate(SubscriptionStatus.CANCELLED))

    assert snapshot.plan_tier == PlanTier.FREE
    assert store.get_snapshot("tenant-1").plan_tier == PlanTier.FREE
    assert len(notifier.calls) == 2


def test_catalog_overrides_apply_to_derived_limits(store, notifier):
    catalog = build_plan_catalog({"pro": {"max_users": 50}})
    enforcer = PlanLimitEnforcer(store, notifier, catalog=catalog)

    snapshot = enforcer.enforce(_aggregate(SubscriptionStatus.ACTIVE))

    assert snapshot.limits.max_users == 50
    assert snapshot.limits.max_warehouses == PLAN_CATALOG[PlanTier.PRO].limits.max_warehouses
    assert PLAN_CATALOG[PlanTier.PRO].limits.max_users == 20


def test_catalog_overrides_reject_unknown_keys():
    with pytest.raises(ValueError):
        build_plan_catalog({"pro": {"max_seats": 10}})


def test_plan_limits_validate_and_serialize():
    with pytest.raises(ValueError):
        PlanLimits(max_users=-2)

    limits = PlanLimits(max_users=UNLIMITED, max_products=10, max_warehouses=2, max_invoices_per_month=0)
    assert limits.to_dict() == {
        "maxUsers": -1,
        "maxProducts": 10,
        "maxWarehouses": 2,
        "maxInvoicesPerMonth": 0,
    }
    assert PlanLimits.from_dict(limits.to_dict()) == limits
