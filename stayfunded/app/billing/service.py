"""Core service coordinating webhook reconciliation and hosted billing sessions."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from ..entitlements.models import EntitlementRecord, PlanChoice
from .config import BillingConfig
from .errors import InvalidArgument, NotFound, Unavailable
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    EntitlementUpdate,
    ProviderEvent,
    SessionRedirect,
    WebhookOutcome,
    WebhookResult,
)
from .reconciliation import ReconciliationEngine, classify
from .resolver import EntityResolver
from .verifier import WebhookVerifier

logger = logging.getLogger("billing.webhook")


class PaymentProvider(Protocol):
    """External payment processor integration."""

    def retrieve_checkout_session(self, session_id: str) -> Mapping[str, Any]:
        ...

    def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        ...

    def retrieve_invoice(self, invoice_id: str) -> Mapping[str, Any]:
        ...

    def retrieve_customer(self, customer_id: str) -> Mapping[str, Any]:
        ...

    def create_customer(self, *, user_id: str, metadata: Dict[str, str]) -> Dict[str, object]:
        """Create a provider customer tagged with the owning user."""

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        mode: str,
        client_reference_id: str,
        metadata: Dict[str, str],
        subscription_metadata: Optional[Dict[str, str]],
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, object]:
        """Create a provider checkout session."""

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        """Create a provider managed billing portal session."""


class EntitlementRepository(Protocol):
    """Persistence operations required by the billing service."""

    def get_entitlement(self, user_id: str) -> Optional[EntitlementRecord]:
        ...

    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        ...

    def apply_update(self, user_id: str, update: EntitlementUpdate) -> EntitlementRecord:
        ...

    def attach_customer(self, user_id: str, customer_id: str) -> str:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


# ``slots`` support for ``dataclass`` was added in Python 3.10.
_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class BillingService:
    """Reconciles provider events into entitlements and issues hosted sessions."""

    config: BillingConfig
    repository: EntitlementRepository
    provider: PaymentProvider
    verifier: WebhookVerifier
    resolver: EntityResolver
    engine: ReconciliationEngine
    event_logger: BillingEventLogger

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify, resolve and apply one webhook delivery.

        Unmodeled event types and events that cannot be tied to a user are
        acknowledged without writing anything. Verification errors and
        :class:`Unavailable` propagate to the caller.
        """

        event = self.verifier.verify(payload, signature)
        category = classify(event)
        if category is None:
            logger.info("Ignoring unmodeled event %s (%s)", event.event_id, event.event_type)
            self._audit(BillingAuditEventType.EVENT_IGNORED, None, event)
            return _outcome(event, WebhookResult.IGNORED)

        try:
            resolution = self.resolver.resolve(event.data_object)
        except NotFound as exc:
            logger.warning(
                "Dropping event %s (%s): %s", event.event_id, event.event_type, exc.message
            )
            self._audit(BillingAuditEventType.EVENT_UNRESOLVED, None, event)
            return _outcome(event, WebhookResult.UNRESOLVED)

        update = self.engine.compute(category, event.data_object)
        stored = self.repository.apply_update(resolution.user_id, update)

        if update.customer_id and stored.customer_id and stored.customer_id != update.customer_id:
            logger.warning(
                "Event %s reports customer %s but user %s is bound to %s; keeping stored customer",
                event.event_id,
                update.customer_id,
                resolution.user_id,
                stored.customer_id,
            )
            self._audit(
                BillingAuditEventType.CUSTOMER_CONFLICT,
                resolution.user_id,
                event,
                reported_customer=update.customer_id,
            )

        logger.info(
            "Applied %s to user %s: status=%s period_end=%s",
            event.event_type,
            resolution.user_id,
            stored.status.value,
            stored.current_period_end,
        )
        self._audit(
            BillingAuditEventType.ENTITLEMENT_UPDATED,
            resolution.user_id,
            event,
            category=update.category,
            status=stored.status.value,
            resolved_via=resolution.strategy.value,
        )
        return _outcome(event, WebhookResult.APPLIED, user_id=resolution.user_id, entitlement=stored)

    def create_checkout_session(self, *, user_id: str, plan: Optional[str]) -> SessionRedirect:
        try:
            choice = PlanChoice(plan)
        except ValueError as exc:
            raise InvalidArgument("Invalid plan") from exc

        price_id = self.config.price_for(choice)
        if not price_id:
            raise Unavailable(f"Checkout is not configured for the {choice.value} plan")

        customer_id = self._ensure_customer(user_id)
        is_lifetime = choice == PlanChoice.LIFETIME
        owner_metadata = {"app": self.config.app_tag, "user_id": user_id}
        session = self.provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            mode="payment" if is_lifetime else "subscription",
            client_reference_id=user_id,
            metadata={**owner_metadata, "plan": "founder_lifetime" if is_lifetime else "founder_monthly"},
            subscription_metadata=None if is_lifetime else owner_metadata,
            success_url=self.config.success_url,
            cancel_url=self.config.cancel_url,
        )
        url = session.get("url")
        if not url:
            raise Unavailable("Stripe did not return a checkout URL")

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CHECKOUT_STARTED,
                user_id=user_id,
                metadata={"plan": choice.value, "customer_id": customer_id},
            )
        )
        return SessionRedirect(session_id=_optional_str(session.get("id")), url=str(url))

    def create_portal_session(self, *, user_id: str) -> SessionRedirect:
        record = self.repository.get_entitlement(user_id)
        if record is None or not record.customer_id:
            raise NotFound("No Stripe customer found for this user.")
        if record.is_lifetime:
            raise InvalidArgument("Lifetime plan has no billing portal.")

        session = self.provider.create_billing_portal_session(
            customer_id=record.customer_id,
            return_url=self.config.portal_return_url,
        )
        url = session.get("url")
        if not url:
            raise Unavailable("Stripe did not return a portal URL")

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PORTAL_OPENED,
                user_id=user_id,
                metadata={"customer_id": record.customer_id},
            )
        )
        return SessionRedirect(session_id=_optional_str(session.get("id")), url=str(url))

    def _ensure_customer(self, user_id: str) -> str:
        existing = self.repository.get_entitlement(user_id)
        if existing is not None and existing.customer_id:
            return existing.customer_id

        customer = self.provider.create_customer(
            user_id=user_id, metadata={"app": self.config.app_tag}
        )
        created_id = str(customer["id"])
        stored_id = self.repository.attach_customer(user_id, created_id)
        if stored_id != created_id:
            # A concurrent checkout attached a customer first.
            logger.info("User %s already bound to customer %s; discarding %s", user_id, stored_id, created_id)
        else:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.CUSTOMER_CREATED,
                    user_id=user_id,
                    metadata={"customer_id": created_id},
                )
            )
        return stored_id

    def _audit(
        self,
        event_type: BillingAuditEventType,
        user_id: Optional[str],
        event: ProviderEvent,
        **metadata: str,
    ) -> None:
        self.event_logger.log(
            BillingAuditEvent(
                event_type=event_type,
                user_id=user_id,
                metadata={"event_id": event.event_id, "event_type": event.event_type, **metadata},
            )
        )


def _outcome(
    event: ProviderEvent,
    result: WebhookResult,
    *,
    user_id: Optional[str] = None,
    entitlement: Optional[EntitlementRecord] = None,
) -> WebhookOutcome:
    return WebhookOutcome(
        event_id=event.event_id,
        event_type=event.event_type,
        result=result,
        user_id=user_id,
        entitlement=entitlement,
    )


def _optional_str(value: object) -> Optional[str]:
    return str(value) if value else None


__all__ = [
    "BillingEventLogger",
    "BillingService",
    "EntitlementRepository",
    "PaymentProvider",
]
