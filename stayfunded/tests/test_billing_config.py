from __future__ import annotations

import pytest

from stayfunded.app.billing.config import load_billing_config
from stayfunded.app.entitlements import PlanChoice

from conftest import TEST_ENV


def test_test_key_selects_test_prices():
    config = load_billing_config(
        {**TEST_ENV, "STRIPE_PRICE_FOUNDER_MONTHLY": "price_live_monthly"}
    )

    assert config.is_test_mode
    assert config.price_for(PlanChoice.MONTHLY) == "price_monthly"
    assert config.price_for(PlanChoice.LIFETIME) == "price_lifetime"


def test_live_key_selects_live_prices():
    config = load_billing_config(
        {
            **TEST_ENV,
            "STRIPE_SECRET_KEY": "sk_live_123",
            "STRIPE_PRICE_FOUNDER_MONTHLY": "price_live_monthly",
            "STRIPE_PRICE_FOUNDER_LIFETIME": "price_live_lifetime",
        }
    )

    assert not config.is_test_mode
    assert config.monthly_price_id == "price_live_monthly"
    assert config.lifetime_price_id == "price_live_lifetime"


def test_defaults():
    config = load_billing_config(TEST_ENV)

    assert config.webhook_tolerance_seconds == 300
    assert config.stripe_timeout_seconds == 10.0
    assert config.stripe_max_network_retries == 0
    assert config.finalized_invoice_grants_access is True
    assert config.auth_jwt_audience == "authenticated"
    assert config.app_tag == "stayfunded"
    assert config.portal_return_url == "https://app.stayfunded.test/account"


def test_site_url_falls_back_to_public_variable():
    env = {key: value for key, value in TEST_ENV.items() if key != "SITE_URL"}

    assert load_billing_config(env).site_url == "http://localhost:3000"
    assert (
        load_billing_config({**env, "NEXT_PUBLIC_SITE_URL": "https://stayfunded.app"}).success_url
        == "https://stayfunded.app/account?stripe=success"
    )


def test_overrides_are_parsed():
    config = load_billing_config(
        {
            **TEST_ENV,
            "STRIPE_WEBHOOK_TOLERANCE": "60",
            "STRIPE_TIMEOUT_SECONDS": "2.5",
            "STRIPE_MAX_NETWORK_RETRIES": "2",
            "BILLING_FINALIZED_GRANTS_ACCESS": "false",
            "AUTH_JWT_AUDIENCE": "",
        }
    )

    assert config.webhook_tolerance_seconds == 60
    assert config.stripe_timeout_seconds == 2.5
    assert config.stripe_max_network_retries == 2
    assert config.finalized_invoice_grants_access is False
    assert config.auth_jwt_audience is None


@pytest.mark.parametrize("missing", ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "AUTH_JWT_SECRET"])
def test_missing_required_values(missing):
    env = {key: value for key, value in TEST_ENV.items() if key != missing}

    with pytest.raises(ValueError, match=missing):
        load_billing_config(env)


def test_invalid_integer_is_reported():
    with pytest.raises(ValueError):
        load_billing_config({**TEST_ENV, "STRIPE_WEBHOOK_TOLERANCE": "soon"})
