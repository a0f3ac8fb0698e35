"""Read-side access to entitlement records for the rest of the product."""
from __future__ import annotations

from typing import Optional, Protocol

from .models import (
    EntitlementRecord,
    EntitlementStatus,
    EntitlementSummary,
    MONTHLY_PLAN_STATUSES,
    PlanLabel,
)


class EntitlementReader(Protocol):
    """Data access required to read entitlement rows."""

    def get_entitlement(self, user_id: str) -> Optional[EntitlementRecord]:
        ...


class EntitlementService:
    """Answers "is this user entitled" without exposing storage details."""

    def __init__(self, repository: EntitlementReader) -> None:
        self._repository = repository

    def get_entitlement(self, user_id: str) -> EntitlementRecord:
        """Return the stored record, or an ``inactive`` placeholder when absent."""

        record = self._repository.get_entitlement(user_id)
        if record is None:
            return EntitlementRecord.inactive(user_id)
        return record

    def has_access(self, user_id: str) -> bool:
        return self.get_entitlement(user_id).has_access

    def summarize(self, user_id: str) -> EntitlementSummary:
        record = self.get_entitlement(user_id)
        label = plan_label_for(record)
        return EntitlementSummary(
            user_id=record.user_id,
            plan_label=label,
            status=record.status,
            has_access=record.has_access,
            current_period_end=None if record.is_lifetime else record.current_period_end,
            portal_eligible=bool(record.customer_id) and not record.is_lifetime,
            monthly_is_current=record.status
            in {EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE},
            lifetime_is_current=record.is_lifetime,
            price_id=record.price_id,
        )


def plan_label_for(record: EntitlementRecord) -> PlanLabel:
    if record.is_lifetime:
        return PlanLabel.FOUNDER_LIFETIME
    if record.status in MONTHLY_PLAN_STATUSES:
        return PlanLabel.FOUNDER_MONTHLY
    return PlanLabel.FREE
