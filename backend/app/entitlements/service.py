"""Derivation and enforcement of tenant plan limits."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Protocol, TYPE_CHECKING

from .cache import EntitlementSnapshotStore
from .catalog import PLAN_CATALOG, PlanDefinition, get_plan_definition
from .models import EntitlementSnapshot, PlanTier

if TYPE_CHECKING:  # pragma: no cover
    from ..billing.models import SubscriptionAggregate

logger = logging.getLogger(__name__)


class EntitlementChangeNotifier(Protocol):
    """Broadcasts entitlement changes to dependent subsystems."""

    def notify_entitlements_changed(
        self,
        previous: Optional[EntitlementSnapshot],
        current: EntitlementSnapshot,
    ) -> None:
        ...


def derive_entitlements(
    aggregate: "SubscriptionAggregate",
    catalog: Optional[Mapping[PlanTier, PlanDefinition]] = None,
    *,
    computed_at: Optional[datetime] = None,
) -> EntitlementSnapshot:
    """Map a subscription aggregate to the limits currently in effect.

    ``active`` and ``past_due`` subscriptions receive their plan's limits
    (``past_due`` is a grace period). ``cancelled`` and ``incomplete``
    subscriptions collapse to the free tier regardless of ``plan_tier``.
    """

    effective_tier = aggregate.plan_tier if aggregate.status.grants_plan_limits else PlanTier.FREE
    definition = get_plan_definition(effective_tier, catalog)
    return EntitlementSnapshot(
        tenant_id=aggregate.tenant_id,
        plan_tier=definition.tier,
        subscribed_tier=aggregate.plan_tier,
        subscription_status=aggregate.status,
        limits=definition.limits,
        computed_at=computed_at or datetime.now(timezone.utc),
    )


class PlanLimitEnforcer:
    """Rebuilds, persists and broadcasts entitlement snapshots."""

    def __init__(
        self,
        snapshot_store: EntitlementSnapshotStore,
        notifier: EntitlementChangeNotifier,
        *,
        catalog: Optional[Mapping[PlanTier, PlanDefinition]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._snapshot_store = snapshot_store
        self._notifier = notifier
        self._catalog = dict(catalog or PLAN_CATALOG)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def enforce(self, aggregate: "SubscriptionAggregate") -> EntitlementSnapshot:
        """Derive and persist the tenant's snapshot, notifying on changes."""

        snapshot = derive_entitlements(aggregate, self._catalog, computed_at=self._clock())
        previous = self._snapshot_store.get_snapshot(aggregate.tenant_id)
        persisted = self._snapshot_store.save_snapshot(snapshot)

        if persisted.grants_same_access(previous):
            logger.debug("Entitlements unchanged for tenant %s", aggregate.tenant_id)
            return persisted

        logger.info(
            "Entitlements changed for tenant %s tier=%s status=%s",
            aggregate.tenant_id,
            persisted.plan_tier.value,
            persisted.subscription_status.value,
        )
        self._notifier.notify_entitlements_changed(previous, persisted)
        return persisted

    def ensure_current(self, aggregate: "SubscriptionAggregate") -> EntitlementSnapshot:
        """Rebuild the snapshot only when it is missing or grants different access.

        Repairs snapshots left behind when a previous enforcement failed after
        the aggregate was already committed.
        """

        stored = self._snapshot_store.get_snapshot(aggregate.tenant_id)
        expected = derive_entitlements(aggregate, self._catalog, computed_at=self._clock())
        if stored is not None and stored.grants_same_access(expected):
            return stored
        logger.warning("Rebuilding out-of-date entitlements for tenant %s", aggregate.tenant_id)
        return self.enforce(aggregate)

    def current_snapshot(self, aggregate: "SubscriptionAggregate") -> EntitlementSnapshot:
        """Return the stored snapshot, rebuilding it when missing."""

        stored = self._snapshot_store.get_snapshot(aggregate.tenant_id)
        if stored is not None:
            return stored
        return self.enforce(aggregate)
