"""Authenticates inbound webhook deliveries against the shared signing secret."""
from __future__ import annotations

import json
import logging
from typing import Optional

import stripe

from .errors import InvalidArgument, Unauthenticated
from .models import ProviderEvent
from .payloads import from_unix

logger = logging.getLogger("billing.webhook")

_REJECTED = "Invalid webhook signature"


class WebhookVerifier:
    """Verifies the provider's timestamped HMAC signature over the raw body."""

    def __init__(self, secret: str, *, tolerance_seconds: int = 300) -> None:
        if not secret:
            raise ValueError("webhook secret must be provided")
        self._secret = secret
        self._tolerance = tolerance_seconds

    def verify(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        """Return the typed event for ``payload`` or raise :class:`Unauthenticated`.

        ``payload`` must be the exact bytes received; it is only decoded, never
        re-serialized, before the signature check.
        """

        if not signature:
            raise Unauthenticated(_REJECTED)
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self._secret, self._tolerance)
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            logger.debug("Webhook signature rejected: %s", exc)
            raise Unauthenticated(_REJECTED) from exc
        return parse_event(body)


def parse_event(body: str) -> ProviderEvent:
    """Parse an already verified event body."""

    try:
        document = json.loads(body)
    except ValueError as exc:
        raise InvalidArgument("Webhook payload is not valid JSON") from exc

    if not isinstance(document, dict):
        raise InvalidArgument("Webhook payload must be a JSON object")
    event_id = document.get("id")
    event_type = document.get("type")
    data = document.get("data")
    data_object = data.get("object") if isinstance(data, dict) else None
    if not isinstance(event_id, str) or not isinstance(event_type, str):
        raise InvalidArgument("Webhook payload is missing id or type")
    if not isinstance(data_object, dict):
        raise InvalidArgument("Webhook payload is missing data.object")

    return ProviderEvent(
        event_id=event_id,
        event_type=event_type,
        data_object=data_object,
        created=from_unix(document.get("created")),
        livemode=bool(document.get("livemode", False)),
    )
