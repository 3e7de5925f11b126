"""Static catalog of plan tiers and the resource limits they grant."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .models import UNLIMITED, PlanLimits, PlanTier


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a subscription plan and its limit mapping."""

    tier: PlanTier
    display_name: str
    limits: PlanLimits


FREE_LIMITS = PlanLimits(
    max_users=2,
    max_products=100,
    max_warehouses=1,
    max_invoices_per_month=50,
)

BASIC_LIMITS = PlanLimits(
    max_users=5,
    max_products=1000,
    max_warehouses=3,
    max_invoices_per_month=500,
)

PRO_LIMITS = PlanLimits(
    max_users=20,
    max_products=UNLIMITED,
    max_warehouses=10,
    max_invoices_per_month=UNLIMITED,
)

ENTERPRISE_LIMITS = PlanLimits(
    max_users=UNLIMITED,
    max_products=UNLIMITED,
    max_warehouses=UNLIMITED,
    max_invoices_per_month=UNLIMITED,
)

PLAN_CATALOG: Dict[PlanTier, PlanDefinition] = {
    PlanTier.FREE: PlanDefinition(tier=PlanTier.FREE, display_name="Free", limits=FREE_LIMITS),
    PlanTier.BASIC: PlanDefinition(tier=PlanTier.BASIC, display_name="Basic", limits=BASIC_LIMITS),
    PlanTier.PRO: PlanDefinition(tier=PlanTier.PRO, display_name="Pro", limits=PRO_LIMITS),
    PlanTier.ENTERPRISE: PlanDefinition(
        tier=PlanTier.ENTERPRISE,
        display_name="Enterprise",
        limits=ENTERPRISE_LIMITS,
    ),
}


def get_plan_definition(
    plan_tier: PlanTier,
    catalog: Optional[Mapping[PlanTier, PlanDefinition]] = None,
) -> PlanDefinition:
    """Return a plan definition, raising if unsupported."""

    source = PLAN_CATALOG if catalog is None else catalog
    try:
        return source[plan_tier]
    except KeyError as exc:
        raise KeyError(f"Unknown plan tier: {plan_tier}") from exc


def build_plan_catalog(
    overrides: Optional[Mapping[str, Mapping[str, int]]] = None,
) -> Dict[PlanTier, PlanDefinition]:
    """Return the default catalog with per-tier limit overrides applied.

    ``overrides`` maps a tier value (``"pro"``) to ``max_*`` field overrides,
    e.g. ``{"pro": {"max_users": 50}}``.
    """

    catalog = dict(PLAN_CATALOG)
    for tier_value, limit_overrides in (overrides or {}).items():
        tier = PlanTier(tier_value)
        definition = catalog[tier]
        catalog[tier] = PlanDefinition(
            tier=definition.tier,
            display_name=definition.display_name,
            limits=definition.limits.with_overrides(dict(limit_overrides)),
        )
    return catalog
