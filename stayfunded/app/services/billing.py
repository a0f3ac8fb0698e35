"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingService,
    EntitlementRepository,
    EntityResolver,
    PaymentProvider,
    ReconciliationEngine,
    ReconciliationPolicy,
    WebhookVerifier,
)
from ..billing.auth import BearerAuthenticator
from ..billing.config import BillingConfig, load_billing_config
from ..billing.provider import StripeGateway
from ..billing.repository import PostgresEntitlementRepository
from ..entitlements import EntitlementService


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s user=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.metadata,
        )


def build_billing_service(
    config: BillingConfig,
    *,
    repository: EntitlementRepository,
    provider: PaymentProvider,
    event_logger: Optional[BillingEventLogger] = None,
) -> BillingService:
    """Assemble the webhook pipeline and session issuer around ``repository`` and ``provider``."""

    policy = ReconciliationPolicy(
        finalized_invoice_grants_access=config.finalized_invoice_grants_access
    )
    return BillingService(
        config=config,
        repository=repository,
        provider=provider,
        verifier=WebhookVerifier(
            config.stripe_webhook_secret, tolerance_seconds=config.webhook_tolerance_seconds
        ),
        resolver=EntityResolver(repository, provider),
        engine=ReconciliationEngine(provider, policy),
        event_logger=event_logger or LoggingBillingEventLogger(),
    )


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = get_billing_config()
    return build_billing_service(
        config,
        repository=PostgresEntitlementRepository(),
        provider=StripeGateway(config),
    )


@lru_cache(maxsize=1)
def get_authenticator() -> BearerAuthenticator:
    config = get_billing_config()
    return BearerAuthenticator(config.auth_jwt_secret, audience=config.auth_jwt_audience)


@lru_cache(maxsize=1)
def get_entitlement_service() -> EntitlementService:
    return EntitlementService(PostgresEntitlementRepository())


__all__ = [
    "LoggingBillingEventLogger",
    "build_billing_service",
    "get_authenticator",
    "get_billing_config",
    "get_billing_service",
    "get_entitlement_service",
]
