"""Stripe-backed implementation of the payment provider capabilities."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import stripe

from .config import BillingConfig
from .errors import InvalidArgument, NotFound, Unavailable

logger = logging.getLogger("billing.provider")


class StripeGateway:
    """Fetches provider objects and creates customers and hosted sessions.

    Every call is bounded by the configured HTTP timeout; network failures,
    rate limits and provider outages surface as :class:`Unavailable` so the
    webhook caller answers with a non-2xx status and the provider redelivers.
    """

    def __init__(self, config: BillingConfig, *, client: Optional[stripe.StripeClient] = None) -> None:
        self._config = config
        self._client = client or stripe.StripeClient(
            config.stripe_secret_key,
            max_network_retries=config.stripe_max_network_retries,
            http_client=stripe.RequestsClient(timeout=config.stripe_timeout_seconds),
        )

    def retrieve_checkout_session(self, session_id: str) -> Any:
        return self._call(
            "checkout session",
            self._client.checkout.sessions.retrieve,
            session_id,
            params={"expand": ["line_items.data.price"]},
        )

    def retrieve_subscription(self, subscription_id: str) -> Any:
        return self._call(
            "subscription",
            self._client.subscriptions.retrieve,
            subscription_id,
            params={"expand": ["items.data.price"]},
        )

    def retrieve_invoice(self, invoice_id: str) -> Any:
        return self._call("invoice", self._client.invoices.retrieve, invoice_id)

    def retrieve_customer(self, customer_id: str) -> Any:
        return self._call("customer", self._client.customers.retrieve, customer_id)

    def create_customer(self, *, user_id: str, metadata: Dict[str, str]) -> Dict[str, object]:
        customer = self._call(
            "customer",
            self._client.customers.create,
            params={"metadata": {**metadata, "user_id": user_id}},
        )
        return {"id": customer["id"]}

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
        params: Dict[str, Any] = {
            "mode": mode,
            "customer": customer_id,
            "client_reference_id": client_reference_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [{"price": price_id, "quantity": 1}],
            "allow_promotion_codes": False,
            "metadata": metadata,
        }
        if subscription_metadata is not None:
            params["subscription_data"] = {"metadata": subscription_metadata}
        session = self._call("checkout session", self._client.checkout.sessions.create, params=params)
        return {"id": session["id"], "url": session["url"]}

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        session = self._call(
            "billing portal session",
            self._client.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        return {"id": session["id"], "url": session["url"]}

    def _call(self, label: str, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            result = method(*args, **kwargs)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                raise NotFound(f"Stripe {label} not found") from exc
            raise InvalidArgument(f"Stripe rejected the {label} request") from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe %s call failed: %s", label, exc)
            raise Unavailable(f"Stripe {label} request failed") from exc
        if isinstance(result, stripe.StripeObject):
            return result.to_dict()
        return result
