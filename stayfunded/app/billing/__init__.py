"""Billing domain package reconciling payment provider events into entitlements."""

from .errors import (
    BillingError,
    Conflict,
    InvalidArgument,
    NotFound,
    Unauthenticated,
    Unavailable,
)
from .models import (
    Authority,
    BillingAuditEvent,
    BillingAuditEventType,
    EntitlementUpdate,
    FieldAction,
    FieldChange,
    ProviderEvent,
    SessionRedirect,
    WebhookOutcome,
    WebhookResult,
)
from .reconciliation import (
    EventCategory,
    ReconciliationEngine,
    ReconciliationPolicy,
    classify,
    status_from_provider,
)
from .resolver import EntityResolver, Resolution, ResolutionStrategy
from .service import (
    BillingEventLogger,
    BillingService,
    EntitlementRepository,
    PaymentProvider,
)
from .verifier import WebhookVerifier, parse_event

__all__ = [
    "Authority",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingEventLogger",
    "BillingService",
    "Conflict",
    "EntitlementRepository",
    "EntitlementUpdate",
    "EntityResolver",
    "EventCategory",
    "FieldAction",
    "FieldChange",
    "InvalidArgument",
    "NotFound",
    "PaymentProvider",
    "ProviderEvent",
    "ReconciliationEngine",
    "ReconciliationPolicy",
    "Resolution",
    "ResolutionStrategy",
    "SessionRedirect",
    "Unauthenticated",
    "Unavailable",
    "WebhookOutcome",
    "WebhookResult",
    "WebhookVerifier",
    "classify",
    "parse_event",
    "status_from_provider",
]
