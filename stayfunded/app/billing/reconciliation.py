"""State machine turning provider events into entitlement updates."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from ..entitlements.models import EntitlementStatus
from .errors import InvalidArgument
from .models import Authority, EntitlementUpdate, FieldChange, ProviderEvent
from .payloads import (
    dig,
    first_line_item,
    invoice_period_end,
    invoice_subscription_id,
    object_id,
    price_id_of,
)

logger = logging.getLogger("billing.reconciliation")


class ProviderObjects(Protocol):
    """Fetches the current version of provider objects by id."""

    def retrieve_checkout_session(self, session_id: str) -> Mapping[str, Any]:
        ...

    def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        ...

    def retrieve_invoice(self, invoice_id: str) -> Mapping[str, Any]:
        ...

    def retrieve_customer(self, customer_id: str) -> Mapping[str, Any]:
        ...


class EventCategory(str, Enum):
    """Closed set of event families the engine models."""

    ONE_TIME_CHECKOUT_COMPLETED = "one_time_checkout_completed"
    SUBSCRIPTION_CHECKOUT_COMPLETED = "subscription_checkout_completed"
    SUBSCRIPTION_CHANGED = "subscription_changed"
    INVOICE_CREATED = "invoice_created"
    INVOICE_FINALIZED = "invoice_finalized"
    INVOICE_SETTLED = "invoice_settled"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"


_CHECKOUT_MODES = {
    "payment": EventCategory.ONE_TIME_CHECKOUT_COMPLETED,
    "subscription": EventCategory.SUBSCRIPTION_CHECKOUT_COMPLETED,
}

_EVENT_TYPES = {
    "customer.subscription.created": EventCategory.SUBSCRIPTION_CHANGED,
    "customer.subscription.updated": EventCategory.SUBSCRIPTION_CHANGED,
    "customer.subscription.deleted": EventCategory.SUBSCRIPTION_CHANGED,
    "invoice.created": EventCategory.INVOICE_CREATED,
    "invoice.finalized": EventCategory.INVOICE_FINALIZED,
    "invoice.paid": EventCategory.INVOICE_SETTLED,
    "invoice.payment_succeeded": EventCategory.INVOICE_SETTLED,
    "invoice.payment_failed": EventCategory.INVOICE_PAYMENT_FAILED,
}

_PROVIDER_STATUSES = {
    "active": EntitlementStatus.ACTIVE,
    "trialing": EntitlementStatus.ACTIVE,
    "incomplete": EntitlementStatus.INCOMPLETE,
    "past_due": EntitlementStatus.PAST_DUE,
    "unpaid": EntitlementStatus.PAST_DUE,
    "canceled": EntitlementStatus.CANCELED,
    "incomplete_expired": EntitlementStatus.CANCELED,
    "paused": EntitlementStatus.INACTIVE,
}


def classify(event: ProviderEvent) -> Optional[EventCategory]:
    """Return the category of ``event`` or ``None`` when it is not modeled."""

    if event.event_type == "checkout.session.completed":
        return _CHECKOUT_MODES.get(str(event.data_object.get("mode") or ""))
    return _EVENT_TYPES.get(event.event_type)


def status_from_provider(value: Any) -> EntitlementStatus:
    if not value:
        return EntitlementStatus.UNKNOWN
    return _PROVIDER_STATUSES.get(str(value), EntitlementStatus.UNKNOWN)


@dataclass(frozen=True)
class ReconciliationPolicy:
    """Policy switches for transitions whose provider semantics are debatable."""

    # invoice.finalized means "billed", not "paid"; when False it is provisional.
    finalized_invoice_grants_access: bool = True


class ReconciliationEngine:
    """Computes the entitlement update implied by one event.

    Fresh copies of sessions, subscriptions and invoices are fetched through
    :class:`ProviderObjects` and only specific fields are read from them. The
    computed update depends only on the event and those objects, so replaying
    an event produces the same update.
    """

    def __init__(self, objects: ProviderObjects, policy: Optional[ReconciliationPolicy] = None) -> None:
        self._objects = objects
        self._policy = policy or ReconciliationPolicy()

    def compute(self, category: EventCategory, data_object: Mapping[str, Any]) -> EntitlementUpdate:
        handler = _TRANSITIONS[category]
        update = handler(self, data_object)
        logger.debug(
            "Computed %s update status=%s authority=%s",
            category.value,
            update.status.value,
            update.authority.name,
        )
        return update

    def _one_time_checkout(self, data_object: Mapping[str, Any]) -> EntitlementUpdate:
        session = self._objects.retrieve_checkout_session(_require_id(data_object, "checkout session"))
        return EntitlementUpdate(
            status=EntitlementStatus.LIFETIME,
            authority=Authority.LIFETIME_GRANT,
            category=EventCategory.ONE_TIME_CHECKOUT_COMPLETED.value,
            customer_id=_customer_of(session, data_object),
            subscription_id=FieldChange.clear(),
            price_id=FieldChange.replace_with(price_id_of(first_line_item(session, "line_items"))),
            current_period_end=FieldChange.clear(),
        )

    def _subscription_checkout(self, data_object: Mapping[str, Any]) -> EntitlementUpdate:
        session = self._objects.retrieve_checkout_session(_require_id(data_object, "checkout session"))
        subscription_id = object_id(dig(session, "subscription")) or object_id(
            dig(data_object, "subscription")
        )
        # Period end stays untouched: invoices are the only trusted source.
        return EntitlementUpdate(
            status=EntitlementStatus.INCOMPLETE,
            authority=Authority.PROVISIONAL,
            category=EventCategory.SUBSCRIPTION_CHECKOUT_COMPLETED.value,
            customer_id=_customer_of(session, data_object),
            subscription_id=FieldChange.set_if_present(subscription_id),
            price_id=FieldChange.set_if_present(price_id_of(first_line_item(session, "line_items"))),
        )

    def _subscription_changed(self, data_object: Mapping[str, Any]) -> EntitlementUpdate:
        subscription_id = _require_id(data_object, "subscription")
        fresh = self._objects.retrieve_subscription(subscription_id)
        status = status_from_provider(dig(fresh, "status") or dig(data_object, "status"))
        return EntitlementUpdate(
            status=status,
            authority=Authority.SUBSCRIPTION,
            category=EventCategory.SUBSCRIPTION_CHANGED.value,
            customer_id=_customer_of(fresh, data_object),
            subscription_id=FieldChange.set(object_id(dig(fresh, "id")) or subscription_id),
            price_id=FieldChange.replace_with(price_id_of(first_line_item(fresh, "items"))),
        )

    def _invoice_created(self, data_object: Mapping[str, Any]) -> EntitlementUpdate:
        invoice = self._fresh_invoice(data_object)
        return EntitlementUpdate(
            status=EntitlementStatus.INCOMPLETE,
            authority=Authority.PROVISIONAL,
            category=EventCategory.INVOICE_CREATED.value,
            customer_id=_customer_of(invoice, data_object),
            subscription_id=FieldChange.set_if_present(invoice_subscription_id(invoice)),
            price_id=FieldChange.set_if_present(price_id_of(first_line_item(invoice, "lines"))),
        )

    def _invoice_finalized(self, data_object: Mapping[str, Any]) -> EntitlementUpdate:
        if self._policy.finalized_invoice_grants_access:
            update = self._invoice_settled(data_object)
        else:
            update = self._invoice_created(data_object)
        return update.model_copy(update={"category": EventCategory.INVOICE_FINALIZED.value})

    def _invoice_settled(self, data_object: Mapping[str, Any]) -> EntitlementUpdate:
        invoice = self._fresh_invoice(data_object)
        return EntitlementUpdate(
            status=EntitlementStatus.ACTIVE,
            authority=Authority.INVOICE,
            category=EventCategory.INVOICE_SETTLED.value,
            customer_id=_customer_of(invoice, data_object),
            subscription_id=FieldChange.set_if_present(invoice_subscription_id(invoice)),
            price_id=FieldChange.set_if_present(price_id_of(first_line_item(invoice, "lines"))),
            current_period_end=FieldChange.set_if_present(invoice_period_end(invoice)),
        )

    def _invoice_payment_failed(self, data_object: Mapping[str, Any]) -> EntitlementUpdate:
        invoice = self._fresh_invoice(data_object)
        return EntitlementUpdate(
            status=EntitlementStatus.PAST_DUE,
            authority=Authority.INVOICE,
            category=EventCategory.INVOICE_PAYMENT_FAILED.value,
            customer_id=_customer_of(invoice, data_object),
            subscription_id=FieldChange.set_if_present(invoice_subscription_id(invoice)),
            price_id=FieldChange.clear(),
        )

    def _fresh_invoice(self, data_object: Mapping[str, Any]) -> Mapping[str, Any]:
        return self._objects.retrieve_invoice(_require_id(data_object, "invoice"))


def _require_id(data_object: Mapping[str, Any], label: str) -> str:
    identifier = object_id(dig(data_object, "id"))
    if not identifier:
        raise InvalidArgument(f"{label} payload is missing an id")
    return identifier


def _customer_of(fresh: Any, data_object: Mapping[str, Any]) -> Optional[str]:
    return object_id(dig(fresh, "customer")) or object_id(dig(data_object, "customer"))


_Transition = Callable[[ReconciliationEngine, Mapping[str, Any]], EntitlementUpdate]

_TRANSITIONS: Dict[EventCategory, _Transition] = {
    EventCategory.ONE_TIME_CHECKOUT_COMPLETED: ReconciliationEngine._one_time_checkout,
    EventCategory.SUBSCRIPTION_CHECKOUT_COMPLETED: ReconciliationEngine._subscription_checkout,
    EventCategory.SUBSCRIPTION_CHANGED: ReconciliationEngine._subscription_changed,
    EventCategory.INVOICE_CREATED: ReconciliationEngine._invoice_created,
    EventCategory.INVOICE_FINALIZED: ReconciliationEngine._invoice_finalized,
    EventCategory.INVOICE_SETTLED: ReconciliationEngine._invoice_settled,
    EventCategory.INVOICE_PAYMENT_FAILED: ReconciliationEngine._invoice_payment_failed,
}

_untransitioned = set(EventCategory) - set(_TRANSITIONS)
if _untransitioned:  # pragma: no cover - guards edits to EventCategory
    raise RuntimeError(
        "Event categories without a transition: "
        + ", ".join(sorted(category.value for category in _untransitioned))
    )
