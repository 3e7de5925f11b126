"""Plan limit evaluation utilities for feature gating."""
from __future__ import annotations

from dataclasses import dataclass

from ..entitlements.models import UNLIMITED, EntitlementSnapshot, LimitedResource
from .exceptions import FeatureGateError


@dataclass(frozen=True)
class LimitEvaluation:
    """Represents the outcome of a plan limit check."""

    resource: LimitedResource
    limit: int
    current_usage: int
    requested: int
    allowed: bool

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> int:
        if self.unlimited:
            return UNLIMITED
        return max(self.limit - self.current_usage, 0)

    def to_dict(self) -> dict[str, int | bool | str]:
        """Serialize the evaluation for logging or telemetry."""

        return {
            "resource": self.resource.value,
            "limit": self.limit,
            "current_usage": self.current_usage,
            "requested": self.requested,
            "allowed": self.allowed,
        }


def evaluate_limit(
    snapshot: EntitlementSnapshot,
    resource: LimitedResource,
    *,
    current_usage: int,
    requested: int = 1,
) -> LimitEvaluation:
    """Determine whether ``requested`` more units fit under the tenant's cap."""

    if current_usage < 0 or requested < 0:
        raise ValueError("usage values must be >= 0")

    limit = snapshot.limits.limit_for(resource)
    allowed = limit == UNLIMITED or current_usage + requested <= limit
    return LimitEvaluation(
        resource=resource,
        limit=limit,
        current_usage=current_usage,
        requested=requested,
        allowed=allowed,
    )


def assert_within_limit(
    snapshot: EntitlementSnapshot,
    resource: LimitedResource,
    *,
    current_usage: int,
    requested: int = 1,
    error_code: str = "plan_limit_reached",
) -> LimitEvaluation:
    """Raise when creating ``requested`` more units would exceed the plan limit."""

    evaluation = evaluate_limit(
        snapshot,
        resource,
        current_usage=current_usage,
        requested=requested,
    )

    if not evaluation.allowed:
        raise FeatureGateError(
            code=error_code,
            message=f"Plan limit reached for {resource.value}.",
            detail={
                "resource": resource.value,
                "limit": evaluation.limit,
                "current_usage": current_usage,
                "plan": snapshot.plan_tier.value,
            },
        )

    return evaluation
