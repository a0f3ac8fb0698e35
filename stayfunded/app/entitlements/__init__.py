"""Entitlement records and the read service used across the product."""

from .models import (
    ACCESS_GRANTING_STATUSES,
    EntitlementRecord,
    EntitlementStatus,
    EntitlementSummary,
    PlanChoice,
    PlanLabel,
)
from .service import EntitlementReader, EntitlementService, plan_label_for

__all__ = [
    "ACCESS_GRANTING_STATUSES",
    "EntitlementReader",
    "EntitlementRecord",
    "EntitlementService",
    "EntitlementStatus",
    "EntitlementSummary",
    "PlanChoice",
    "PlanLabel",
    "plan_label_for",
]
