"""
Test D7 Billing Gateway Configuration
"""

from decimal import Decimal

import pytest
from pydantic import SecretStr

from core.config import Settings
from core.exceptions import ConfigurationError
from d7_billing.gateway_config import GatewayConfig


class TestGatewayConfig:
    """Test URLs, plan lookup and credential validation"""

    def test_test_mode_urls(self, gateway_config):
        assert gateway_config.payment_url == "https://test.payu.in/_payment"
        assert gateway_config.webhook_url == "https://api.example.com/payment/webhook"
        assert gateway_config.success_url == "https://api.example.com/payment/success"
        assert gateway_config.failure_url == "https://api.example.com/payment/failure"

    def test_production_mode_url(self):
        config = GatewayConfig(merchant_key="K", merchant_salt="S", mode="production")

        assert config.payment_url == "https://secure.payu.in/_payment"

    def test_plan_lookup(self, gateway_config):
        assert gateway_config.get_plan("PROFESSIONAL").amount == Decimal("299")
        assert gateway_config.get_plan("agency").amount == Decimal("999")
        assert gateway_config.get_plan("unknown") is None
        assert gateway_config.get_plan(None) is None

    def test_enterprise_is_not_purchasable(self, gateway_config):
        assert gateway_config.get_plan("enterprise") is not None
        assert gateway_config.is_purchasable("enterprise") is False
        assert gateway_config.is_purchasable("professional") is True

    def test_salt_hidden_from_repr(self, gateway_config):
        assert "TESTSALT" not in repr(gateway_config)

    @pytest.mark.parametrize(
        "kwargs,setting",
        [
            ({"merchant_key": "", "merchant_salt": "S"}, "payu_merchant_key"),
            ({"merchant_key": "K", "merchant_salt": ""}, "payu_merchant_salt"),
            ({"merchant_key": "K", "merchant_salt": "S", "mode": "sandbox"}, "payu_mode"),
        ],
    )
    def test_validate(self, kwargs, setting):
        with pytest.raises(ConfigurationError) as exc_info:
            GatewayConfig(**kwargs).validate()

        assert exc_info.value.details["setting"] == setting

    def test_from_settings(self):
        settings = Settings(
            payu_merchant_key="KEY",
            payu_merchant_salt=SecretStr("SALT"),
            app_url="https://app.example.com/",
            api_base_url="https://api.example.com/",
            subscription_period_months=3,
        )

        config = GatewayConfig.from_settings(settings)

        assert config.merchant_key == "KEY"
        assert config.merchant_salt == "SALT"
        assert config.app_url == "https://app.example.com"
        assert config.webhook_url == "https://api.example.com/payment/webhook"
        assert config.subscription_period_months == 3
