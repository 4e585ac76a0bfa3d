"""
D7 Billing Gateway Configuration

Immutable PayU gateway settings and the plan catalogue, built once from
Settings at startup and injected into the components that need them.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Tuple

from core.config import Settings
from core.exceptions import ConfigurationError

PAYU_BASE_URLS = {
    "test": "https://test.payu.in",
    "production": "https://secure.payu.in",
}

DEFAULT_CURRENCY = "INR"


@dataclass(frozen=True)
class PlanConfig:
    """A purchasable (or display-only) subscription plan"""

    name: str
    display_name: str
    amount: Decimal
    tier: str
    description: str
    features: Tuple[str, ...] = ()
    currency: str = DEFAULT_CURRENCY
    purchasable: bool = True


DEFAULT_PLANS: Tuple[PlanConfig, ...] = (
    PlanConfig(
        name="professional",
        display_name="Professional",
        amount=Decimal("299"),
        tier="professional",
        description="Professional Plan - 1 Month Subscription",
        features=(
            "10 client workspaces",
            "150 AI messages per day",
            "Real platform API connections",
            "Priority email support",
            "JSON export",
            "Forever chat history",
        ),
    ),
    PlanConfig(
        name="agency",
        display_name="Agency",
        amount=Decimal("999"),
        tier="agency",
        description="Agency Plan - 1 Month Subscription",
        features=(
            "25 client workspaces",
            "300 AI messages per day",
            "5 team members",
            "Large context support",
            "Support for large AI models",
            "Dedicated account manager",
        ),
    ),
    # Custom pricing, sold through sales only
    PlanConfig(
        name="enterprise",
        display_name="Enterprise",
        amount=Decimal("0"),
        tier="enterprise",
        description="Enterprise Plan - Custom Pricing",
        features=(
            "Unlimited clients",
            "Unlimited messages",
            "24/7 priority support (phone)",
            "Custom onboarding & training",
            "SLA guarantees (99.9% uptime)",
            "Annual contract discounts",
        ),
        purchasable=False,
    ),
)


@dataclass(frozen=True)
class GatewayConfig:
    """PayU merchant credentials, callback URLs and plans"""

    merchant_key: str
    merchant_salt: str = field(repr=False)
    mode: str = "test"
    app_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:8000"
    subscription_period_months: int = 1
    plans: Tuple[PlanConfig, ...] = DEFAULT_PLANS

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayConfig":
        salt = settings.payu_merchant_salt.get_secret_value() if settings.payu_merchant_salt else ""
        return cls(
            merchant_key=settings.payu_merchant_key,
            merchant_salt=salt,
            mode=settings.payu_mode,
            app_url=settings.app_url.rstrip("/"),
            api_base_url=settings.api_base_url.rstrip("/"),
            subscription_period_months=settings.subscription_period_months,
        )

    @property
    def base_url(self) -> str:
        return PAYU_BASE_URLS[self.mode]

    @property
    def payment_url(self) -> str:
        return f"{self.base_url}/_payment"

    @property
    def verification_url(self) -> str:
        return f"{self.base_url}/merchant/postservice.php?form=2"

    @property
    def success_url(self) -> str:
        return f"{self.api_base_url}/payment/success"

    @property
    def failure_url(self) -> str:
        return f"{self.api_base_url}/payment/failure"

    @property
    def webhook_url(self) -> str:
        return f"{self.api_base_url}/payment/webhook"

    @property
    def plan_map(self) -> Dict[str, PlanConfig]:
        return {plan.name: plan for plan in self.plans}

    def get_plan(self, plan_name: Optional[str]) -> Optional[PlanConfig]:
        """Look up a plan by name, case-insensitively"""
        if not plan_name:
            return None
        return self.plan_map.get(plan_name.strip().lower())

    def is_purchasable(self, plan_name: Optional[str]) -> bool:
        plan = self.get_plan(plan_name)
        return bool(plan and plan.purchasable)

    def validate(self) -> None:
        """Raise ConfigurationError when credentials are missing"""
        if not self.merchant_key:
            raise ConfigurationError("PAYU_MERCHANT_KEY is not set", setting="payu_merchant_key")
        if not self.merchant_salt:
            raise ConfigurationError("PAYU_MERCHANT_SALT is not set", setting="payu_merchant_salt")
        if self.mode not in PAYU_BASE_URLS:
            raise ConfigurationError('PAYU_MODE must be either "test" or "production"', setting="payu_mode")
