"""Entitlements domain models and services."""

from .catalog import PLAN_CATALOG, PlanDefinition, build_plan_catalog, get_plan_definition
from .cache import EntitlementSnapshotStore, InMemoryEntitlementSnapshotStore
from .models import (
    UNLIMITED,
    EntitlementSnapshot,
    LimitedResource,
    PlanLimits,
    PlanTier,
    SubscriptionStatus,
)
from .service import EntitlementChangeNotifier, PlanLimitEnforcer, derive_entitlements

__all__ = [
    "PLAN_CATALOG",
    "PlanDefinition",
    "build_plan_catalog",
    "get_plan_definition",
    "EntitlementSnapshotStore",
    "InMemoryEntitlementSnapshotStore",
    "UNLIMITED",
    "EntitlementSnapshot",
    "LimitedResource",
    "PlanLimits",
    "PlanTier",
    "SubscriptionStatus",
    "EntitlementChangeNotifier",
    "PlanLimitEnforcer",
    "derive_entitlements",
]
