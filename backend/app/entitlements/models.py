"""Domain models for plan tiers and tenant entitlements."""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

UNLIMITED = -1


class PlanTier(str, Enum):
    """Canonical identifiers for subscription plans."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    """Lifecycle state for a tenant subscription."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    INCOMPLETE = "incomplete"

    @property
    def grants_plan_limits(self) -> bool:
        """Return ``True`` when the plan tier's limits apply (grace included)."""
        return self in {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}


class LimitedResource(str, Enum):
    """Resources capped by a tenant's plan."""

    USERS = "users"
    PRODUCTS = "products"
    WAREHOUSES = "warehouses"
    INVOICES_PER_MONTH = "invoices_per_month"


@dataclass(frozen=True)
class PlanLimits:
    """Resource caps granted by a plan. ``-1`` means unlimited."""

    max_users: int = 2
    max_products: int = 100
    max_warehouses: int = 1
    max_invoices_per_month: int = 50

    def __post_init__(self) -> None:
        for field in fields(self):
            value = getattr(self, field.name)
            if value < UNLIMITED:
                raise ValueError(f"{field.name} must be >= -1, got {value}")

    def limit_for(self, resource: LimitedResource) -> int:
        return getattr(self, f"max_{resource.value}")

    def with_overrides(self, overrides: Dict[str, int]) -> "PlanLimits":
        """Return a copy with the provided ``max_*`` values replaced."""

        known = {field.name for field in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown plan limit keys: {sorted(unknown)}")
        return replace(self, **{key: int(value) for key, value in overrides.items()})

    def to_dict(self) -> Dict[str, int]:
        """Serialize limits for persistence and notifications."""

        return {
            "maxUsers": self.max_users,
            "maxProducts": self.max_products,
            "maxWarehouses": self.max_warehouses,
            "maxInvoicesPerMonth": self.max_invoices_per_month,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, int]) -> "PlanLimits":
        return cls(
            max_users=int(data["maxUsers"]),
            max_products=int(data["maxProducts"]),
            max_warehouses=int(data["maxWarehouses"]),
            max_invoices_per_month=int(data["maxInvoicesPerMonth"]),
        )


class EntitlementSnapshot(BaseModel):
    """Derived cache of a tenant's resource limits; safe to recompute."""

    tenant_id: str
    plan_tier: PlanTier = Field(description="Tier whose limits are in effect")
    subscribed_tier: PlanTier = Field(description="Tier recorded on the subscription")
    subscription_status: SubscriptionStatus
    limits: PlanLimits
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    def grants_same_access(self, other: Optional["EntitlementSnapshot"]) -> bool:
        """Return whether ``other`` carries identical effective entitlements."""

        if other is None:
            return False
        return (
            self.plan_tier == other.plan_tier
            and self.subscription_status == other.subscription_status
            and self.limits == other.limits
        )
