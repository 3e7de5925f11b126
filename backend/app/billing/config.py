"""Billing webhook configuration helpers."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from ..entitlements.models import PlanTier

_PRICE_ENV_VARS = {
    "STRIPE_PRICE_BASIC": PlanTier.BASIC,
    "STRIPE_PRICE_PRO": PlanTier.PRO,
    "STRIPE_PRICE_ENTERPRISE": PlanTier.ENTERPRISE,
}


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for provider webhook ingestion."""

    webhook_secret: str
    signature_header: str = "Stripe-Signature"
    tolerance_seconds: int = 300
    ledger_reclaim_seconds: int = 300
    max_reconcile_attempts: int = 5
    price_tiers: Dict[str, PlanTier] = field(default_factory=dict)
    plan_limit_overrides: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def __repr__(self) -> str:
        return (
            "BillingConfig(webhook_secret='***', "
            f"signature_header={self.signature_header!r}, "
            f"tolerance_seconds={self.tolerance_seconds}, "
            f"ledger_reclaim_seconds={self.ledger_reclaim_seconds}, "
            f"max_reconcile_attempts={self.max_reconcile_attempts})"
        )


def _to_int(value: Optional[str], *, name: str, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _load_limit_overrides(raw: Optional[str]) -> Dict[str, Dict[str, int]]:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ValueError("PLAN_LIMITS_JSON must be valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ValueError("PLAN_LIMITS_JSON must be an object keyed by plan tier")

    overrides: Dict[str, Dict[str, int]] = {}
    for tier_value, limits in parsed.items():
        try:
            tier = PlanTier(str(tier_value).lower())
        except ValueError as exc:
            raise ValueError(f"PLAN_LIMITS_JSON has unknown plan tier {tier_value!r}") from exc
        if not isinstance(limits, dict):
            raise ValueError(f"PLAN_LIMITS_JSON entry for {tier_value!r} must be an object")
        overrides[tier.value] = {str(key): int(value) for key, value in limits.items()}
    return overrides


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    webhook_secret = (env_mapping.get("STRIPE_WEBHOOK_SECRET") or "").strip()
    if not webhook_secret:
        raise ValueError("STRIPE_WEBHOOK_SECRET must be configured")

    signature_header = (env_mapping.get("WEBHOOK_SIGNATURE_HEADER") or "Stripe-Signature").strip()
    tolerance_seconds = _to_int(
        env_mapping.get("WEBHOOK_TOLERANCE_SECONDS"), name="WEBHOOK_TOLERANCE_SECONDS", default=300
    )
    reclaim_seconds = _to_int(
        env_mapping.get("WEBHOOK_LEDGER_RECLAIM_SECONDS"), name="WEBHOOK_LEDGER_RECLAIM_SECONDS", default=300
    )
    max_attempts = _to_int(
        env_mapping.get("WEBHOOK_MAX_RECONCILE_ATTEMPTS"), name="WEBHOOK_MAX_RECONCILE_ATTEMPTS", default=5
    )

    price_tiers: Dict[str, PlanTier] = {}
    for env_var, tier in _PRICE_ENV_VARS.items():
        price_id = (env_mapping.get(env_var) or "").strip()
        if price_id:
            price_tiers[price_id] = tier

    return BillingConfig(
        webhook_secret=webhook_secret,
        signature_header=signature_header,
        tolerance_seconds=max(0, tolerance_seconds),
        ledger_reclaim_seconds=max(1, reclaim_seconds),
        max_reconcile_attempts=max(1, max_attempts),
        price_tiers=price_tiers,
        plan_limit_overrides=_load_limit_overrides(env_mapping.get("PLAN_LIMITS_JSON")),
    )


__all__ = ["BillingConfig", "load_billing_config"]
