"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements import EntitlementStatus, EntitlementSummary, PlanLabel


class CheckoutSessionRequest(BaseModel):
    plan: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class SessionRedirectResponse(BaseModel):
    url: str


class WebhookAck(BaseModel):
    received: bool = True


class CheckoutUsageHint(BaseModel):
    ok: bool = True
    hint: str = 'POST to this endpoint with JSON: { "plan": "monthly" | "lifetime" }'


class EntitlementSummaryResponse(BaseModel):
    plan_label: PlanLabel = Field(alias="planLabel")
    status: EntitlementStatus
    has_access: bool = Field(alias="hasAccess")
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    portal_eligible: bool = Field(alias="portalEligible")
    monthly_is_current: bool = Field(alias="monthlyIsCurrent")
    lifetime_is_current: bool = Field(alias="lifetimeIsCurrent")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: EntitlementSummary) -> "EntitlementSummaryResponse":
        return cls(
            plan_label=summary.plan_label,
            status=summary.status,
            has_access=summary.has_access,
            current_period_end=summary.current_period_end,
            portal_eligible=summary.portal_eligible,
            monthly_is_current=summary.monthly_is_current,
            lifetime_is_current=summary.lifetime_is_current,
        )
