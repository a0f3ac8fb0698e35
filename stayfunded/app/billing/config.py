"""Billing configuration loaded once at startup."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

from ..entitlements.models import PlanChoice


@dataclass(frozen=True)
class BillingConfig:
    """Credentials, price identifiers and policy switches for billing."""

    stripe_secret_key: str
    stripe_webhook_secret: str
    webhook_tolerance_seconds: int
    stripe_timeout_seconds: float
    stripe_max_network_retries: int
    monthly_price_id: Optional[str]
    lifetime_price_id: Optional[str]
    site_url: str
    auth_jwt_secret: str
    auth_jwt_audience: Optional[str]
    finalized_invoice_grants_access: bool
    app_tag: str

    @property
    def is_test_mode(self) -> bool:
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def success_url(self) -> str:
        return f"{self.site_url}/account?stripe=success"

    @property
    def cancel_url(self) -> str:
        return f"{self.site_url}/account?stripe=cancel"

    @property
    def portal_return_url(self) -> str:
        return f"{self.site_url}/account"

    def price_for(self, plan: PlanChoice) -> Optional[str]:
        if plan == PlanChoice.LIFETIME:
            return self.lifetime_price_id
        return self.monthly_price_id


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _require(env_mapping: Mapping[str, str], name: str) -> str:
    value = (env_mapping.get(name) or "").strip()
    if not value:
        raise ValueError(f"Missing env var: {name}")
    return value


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    secret_key = _require(env_mapping, "STRIPE_SECRET_KEY")
    webhook_secret = _require(env_mapping, "STRIPE_WEBHOOK_SECRET")
    auth_secret = _require(env_mapping, "AUTH_JWT_SECRET")

    # Test keys are paired with the test-mode price catalogue.
    if secret_key.startswith("sk_test_"):
        monthly_price = env_mapping.get("STRIPE_PRICE_TEST_FOUNDER_MONTHLY") or None
        lifetime_price = env_mapping.get("LIFETIME_TEST_PRICE_ID") or None
    else:
        monthly_price = env_mapping.get("STRIPE_PRICE_FOUNDER_MONTHLY") or None
        lifetime_price = env_mapping.get("STRIPE_PRICE_FOUNDER_LIFETIME") or None

    site_url = env_mapping.get("SITE_URL") or env_mapping.get("NEXT_PUBLIC_SITE_URL") or "http://localhost:3000"
    audience = env_mapping.get("AUTH_JWT_AUDIENCE", "authenticated").strip() or None

    return BillingConfig(
        stripe_secret_key=secret_key,
        stripe_webhook_secret=webhook_secret,
        webhook_tolerance_seconds=max(0, _to_int(env_mapping.get("STRIPE_WEBHOOK_TOLERANCE"), default=300)),
        stripe_timeout_seconds=max(1.0, _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=10.0)),
        stripe_max_network_retries=max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=0)),
        monthly_price_id=monthly_price,
        lifetime_price_id=lifetime_price,
        site_url=site_url.rstrip("/"),
        auth_jwt_secret=auth_secret,
        auth_jwt_audience=audience,
        finalized_invoice_grants_access=_to_bool(
            env_mapping.get("BILLING_FINALIZED_GRANTS_ACCESS"), default=True
        ),
        app_tag=(env_mapping.get("BILLING_APP_TAG") or "stayfunded").strip(),
    )
