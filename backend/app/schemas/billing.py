"""API schemas for billing endpoints."""
from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import WebhookDisposition, WebhookProcessingResult
from ..entitlements import PlanTier


class EntitlementLimitsResponse(BaseModel):
    plan_tier: PlanTier = Field(alias="planTier")
    limits: Dict[str, int]

    model_config = ConfigDict(populate_by_name=True)


class WebhookAcknowledgement(BaseModel):
    received: bool = True
    event_id: Optional[str] = Field(alias="eventId", default=None)
    disposition: WebhookDisposition
    entitlements: Optional[EntitlementLimitsResponse] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: WebhookProcessingResult) -> "WebhookAcknowledgement":
        entitlements = None
        if result.snapshot is not None:
            entitlements = EntitlementLimitsResponse(
                plan_tier=result.snapshot.plan_tier,
                limits=result.snapshot.limits.to_dict(),
            )
        return cls(
            event_id=result.event_id,
            disposition=result.disposition,
            entitlements=entitlements,
        )
