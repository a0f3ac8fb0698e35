from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from stayfunded.app.billing import BillingAuditEvent, BillingService, NotFound
from stayfunded.app.billing.config import BillingConfig, load_billing_config
from stayfunded.app.billing.repository import InMemoryEntitlementRepository
from stayfunded.app.services.billing import build_billing_service

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "jwt-test-secret"

TEST_ENV = {
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
    "STRIPE_PRICE_TEST_FOUNDER_MONTHLY": "price_monthly",
    "LIFETIME_TEST_PRICE_ID": "price_lifetime",
    "SITE_URL": "https://app.stayfunded.test/",
    "AUTH_JWT_SECRET": JWT_SECRET,
}

FIXED_NOW = datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)


def unix(value: datetime) -> int:
    return int(value.timestamp())


def checkout_session(
    session_id: str,
    *,
    mode: str,
    customer: Optional[str],
    user_id: Optional[str] = None,
    client_reference_id: Optional[str] = None,
    subscription: Optional[str] = None,
    price: Optional[str] = None,
) -> Dict[str, Any]:
    session: Dict[str, Any] = {
        "id": session_id,
        "object": "checkout.session",
        "mode": mode,
        "customer": customer,
        "client_reference_id": client_reference_id,
        "subscription": subscription,
        "metadata": {"user_id": user_id} if user_id else {},
    }
    if price:
        session["line_items"] = {"data": [{"price": {"id": price}}]}
    return session


def subscription(
    subscription_id: str,
    *,
    status: str,
    customer: str,
    price: Optional[str] = "price_monthly",
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"data": [{"price": {"id": price}}] if price else []},
    }


def invoice(
    invoice_id: str,
    *,
    customer: str,
    subscription_id: Optional[str] = "sub_1",
    price: Optional[str] = "price_monthly",
    period_end: Optional[datetime] = None,
) -> Dict[str, Any]:
    line: Dict[str, Any] = {"price": {"id": price} if price else None}
    if period_end is not None:
        line["period"] = {"start": unix(period_end) - 30 * 86400, "end": unix(period_end)}
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": subscription_id,
        "metadata": {},
        "lines": {"data": [line]},
    }


def event_body(event_type: str, data_object: Dict[str, Any], *, event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": unix(FIXED_NOW),
            "livemode": False,
            "data": {"object": data_object},
        }
    ).encode("utf-8")


def sign(payload: bytes, *, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class FakeStripeGateway:
    """Provider double serving stored objects and recording created sessions."""

    def __init__(self) -> None:
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.fetches: List[str] = []
        self.created_customers: List[Dict[str, Any]] = []
        self.checkout_requests: List[Dict[str, Any]] = []
        self.portal_requests: List[Dict[str, Any]] = []
        self.failure: Optional[Exception] = None

    def add(self, *objects: Dict[str, Any]) -> None:
        for item in objects:
            self.objects[item["id"]] = item

    def _fetch(self, object_id: str) -> Dict[str, Any]:
        if self.failure is not None:
            raise self.failure
        self.fetches.append(object_id)
        try:
            return self.objects[object_id]
        except KeyError:
            raise NotFound(f"Stripe object {object_id} not found") from None

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return self._fetch(session_id)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._fetch(subscription_id)

    def retrieve_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return self._fetch(invoice_id)

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        if self.failure is not None:
            raise self.failure
        try:
            return self.customers[customer_id]
        except KeyError:
            raise NotFound(f"Stripe customer {customer_id} not found") from None

    def create_customer(self, *, user_id: str, metadata: Dict[str, str]) -> Dict[str, object]:
        if self.failure is not None:
            raise self.failure
        customer_id = f"cus_new_{len(self.created_customers) + 1}"
        record = {"id": customer_id, "metadata": {**metadata, "user_id": user_id}}
        self.created_customers.append(record)
        self.customers[customer_id] = record
        return {"id": customer_id}

    def create_checkout_session(self, **kwargs: Any) -> Dict[str, object]:
        if self.failure is not None:
            raise self.failure
        self.checkout_requests.append(kwargs)
        session_id = f"cs_new_{len(self.checkout_requests)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        if self.failure is not None:
            raise self.failure
        self.portal_requests.append({"customer_id": customer_id, "return_url": return_url})
        return {"id": "bps_1", "url": f"https://billing.stripe.test/{customer_id}"}


class RecordingEventLogger:
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def billing_config() -> BillingConfig:
    return load_billing_config(TEST_ENV)


class TickingClock:
    """Clock advancing one second per reading so rewrites are observable."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


def make_components(config: BillingConfig):
    repository = InMemoryEntitlementRepository(clock=TickingClock())
    gateway = FakeStripeGateway()
    event_logger = RecordingEventLogger()
    service = build_billing_service(
        config,
        repository=repository,
        provider=gateway,
        event_logger=event_logger,
    )
    return service, repository, gateway, event_logger


@pytest.fixture
def billing_components(billing_config):
    return make_components(billing_config)


@pytest.fixture
def deliver(billing_components):
    """Sign and hand an event to the service, registering its object upstream."""

    service: BillingService = billing_components[0]
    gateway: FakeStripeGateway = billing_components[2]
    counter = {"value": 0}

    def _deliver(event_type: str, data_object: Dict[str, Any], *, event_id: Optional[str] = None):
        if data_object.get("object") != "customer":
            gateway.add(data_object)
        counter["value"] += 1
        body = event_body(event_type, data_object, event_id=event_id or f"evt_{counter['value']}")
        return service.handle_webhook(body, sign(body))

    return _deliver
