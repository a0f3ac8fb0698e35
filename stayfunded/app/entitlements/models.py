"""Domain models for per-user entitlement records."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EntitlementStatus(str, Enum):
    """Canonical billing status stored on an entitlement record."""

    INACTIVE = "inactive"
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    LIFETIME = "lifetime"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


ACCESS_GRANTING_STATUSES = frozenset(
    {EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE, EntitlementStatus.LIFETIME}
)

# Statuses that indicate the user has been on the recurring plan at some point.
MONTHLY_PLAN_STATUSES = frozenset(
    {
        EntitlementStatus.ACTIVE,
        EntitlementStatus.PAST_DUE,
        EntitlementStatus.INCOMPLETE,
        EntitlementStatus.CANCELED,
    }
)


class PlanChoice(str, Enum):
    """Plans a user can purchase through hosted checkout."""

    MONTHLY = "monthly"
    LIFETIME = "lifetime"


class PlanLabel(str, Enum):
    """Human readable plan names shown on the account page."""

    FREE = "Free"
    FOUNDER_MONTHLY = "Founder Monthly"
    FOUNDER_LIFETIME = "Founder Lifetime"


class EntitlementRecord(BaseModel):
    """Single persisted entitlement row, one per user."""

    user_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: EntitlementStatus = EntitlementStatus.INACTIVE
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _lifetime_has_no_period(self) -> "EntitlementRecord":
        if self.status == EntitlementStatus.LIFETIME and (
            self.subscription_id is not None or self.current_period_end is not None
        ):
            raise ValueError("lifetime entitlements cannot carry a subscription or period end")
        return self

    @property
    def has_access(self) -> bool:
        return self.status in ACCESS_GRANTING_STATUSES

    @property
    def is_lifetime(self) -> bool:
        return self.status == EntitlementStatus.LIFETIME

    @classmethod
    def inactive(cls, user_id: str) -> "EntitlementRecord":
        """Placeholder returned when no row exists for ``user_id``."""

        return cls(user_id=user_id, status=EntitlementStatus.INACTIVE)


class EntitlementSummary(BaseModel):
    """Read model consumed by the account page."""

    user_id: str
    plan_label: PlanLabel
    status: EntitlementStatus
    has_access: bool
    current_period_end: Optional[datetime] = None
    portal_eligible: bool = False
    monthly_is_current: bool = False
    lifetime_is_current: bool = False
    price_id: Optional[str] = Field(default=None)

    model_config = ConfigDict(frozen=True)
