"""Convenience wrapper around entitlement snapshots for limit checks."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from ..entitlements import EntitlementSnapshot, LimitedResource, PlanTier
from .quota import LimitEvaluation, assert_within_limit, evaluate_limit


@dataclass(frozen=True)
class EntitlementContext:
    """Facade exposing gating helpers for one tenant's snapshot."""

    snapshot: EntitlementSnapshot

    @property
    def tenant_id(self) -> str:
        return self.snapshot.tenant_id

    @property
    def plan(self) -> PlanTier:
        return self.snapshot.plan_tier

    @property
    def limits(self) -> Dict[str, int]:
        return self.snapshot.limits.to_dict()

    def has_capacity(self, resource: LimitedResource, *, current_usage: int, requested: int = 1) -> bool:
        """Return whether ``requested`` more units fit under the plan."""

        return evaluate_limit(
            self.snapshot,
            resource,
            current_usage=current_usage,
            requested=requested,
        ).allowed

    def require_capacity(
        self,
        resource: LimitedResource,
        *,
        current_usage: int,
        requested: int = 1,
    ) -> LimitEvaluation:
        """Raise :class:`FeatureGateError` when the plan limit would be exceeded."""

        return assert_within_limit(
            self.snapshot,
            resource,
            current_usage=current_usage,
            requested=requested,
        )
