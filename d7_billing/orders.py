"""
D7 Billing Orders

Builds signed PayU orders at checkout. The amount string placed in the form is
the exact string that was signed.
"""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from core.exceptions import InvalidPlanError, ValidationError
from core.logging import get_logger

from . import hash_codec
from .gateway_config import GatewayConfig, PlanConfig
from .identifiers import IdentifierFactory
from .models import User

logger = get_logger("d7_billing.orders")

SERVICE_PROVIDER = "payu_paisa"
DEFAULT_PHONE = "9999999999"  # PayU requires a phone number
DEFAULT_CUSTOMER_NAME = "Customer"
MAX_ORDER_AMOUNT = Decimal("1000000")

MAX_NAME_LENGTH = 50
MAX_EMAIL_LENGTH = 100
MAX_PHONE_LENGTH = 15
MAX_PRODUCT_INFO_LENGTH = 100


@dataclass(frozen=True)
class Order:
    """A signed, ready-to-submit checkout request"""

    key: str
    txnid: str
    order_id: str
    amount: str
    productinfo: str
    firstname: str
    email: str
    phone: str
    udf1: str
    udf2: str
    udf3: str
    udf4: str
    udf5: str
    surl: str
    furl: str
    service_provider: str
    hash: str

    def to_form_fields(self) -> Dict[str, str]:
        """Fields posted to the gateway payment page"""
        fields = asdict(self)
        fields.pop("order_id")
        return fields


def sanitize_customer_fields(name: Optional[str], email: str, phone: Optional[str], productinfo: str) -> Dict[str, str]:
    return {
        "firstname": (name or DEFAULT_CUSTOMER_NAME).strip()[:MAX_NAME_LENGTH],
        "email": email.strip().lower()[:MAX_EMAIL_LENGTH],
        "phone": (phone or DEFAULT_PHONE).strip()[:MAX_PHONE_LENGTH],
        "productinfo": productinfo.strip()[:MAX_PRODUCT_INFO_LENGTH],
    }


def validate_amount(amount: Decimal) -> None:
    if not amount.is_finite() or amount <= 0 or amount > MAX_ORDER_AMOUNT:
        raise ValidationError("Invalid payment amount", field="amount", value=str(amount))


class OrderIssuer:
    """Creates signed orders for purchasable plans"""

    def __init__(self, config: GatewayConfig, identifiers: Optional[IdentifierFactory] = None):
        self.config = config
        self.identifiers = identifiers or IdentifierFactory()

    def resolve_plan(self, plan_name: Optional[str]) -> PlanConfig:
        plan = self.config.get_plan(plan_name)
        if plan is None or not plan.purchasable:
            raise InvalidPlanError(plan_name or "")
        return plan

    def issue(self, user: User, plan_name: str, phone: Optional[str] = None) -> Order:
        self.config.validate()
        plan = self.resolve_plan(plan_name)
        validate_amount(plan.amount)

        customer = sanitize_customer_fields(user.name, user.email, phone, plan.description)
        amount = hash_codec.format_amount(plan.amount)
        txnid = self.identifiers.new_transaction_id()
        order_id = self.identifiers.new_order_id()

        signed_fields = {
            "key": self.config.merchant_key,
            "txnid": txnid,
            "amount": amount,
            "productinfo": customer["productinfo"],
            "firstname": customer["firstname"],
            "email": customer["email"],
            "udf1": str(user.id),
            "udf2": plan.name,
            "udf3": order_id,
            "udf4": plan.tier,
            "udf5": "",
        }
        order = Order(
            order_id=order_id,
            phone=customer["phone"],
            surl=self.config.success_url,
            furl=self.config.failure_url,
            service_provider=SERVICE_PROVIDER,
            hash=hash_codec.sign(signed_fields, self.config.merchant_salt),
            **signed_fields,
        )
        logger.info(f"Issued order {order_id} ({txnid}) for user {user.id}, plan {plan.name}, amount {amount}")
        return order

    def order_response(self, order: Order, plan: PlanConfig) -> Dict[str, Any]:
        """Order form plus display data for the checkout page"""
        data: Dict[str, Any] = order.to_form_fields()
        data.update(
            {
                "orderId": order.order_id,
                "planName": plan.display_name,
                "planAmount": str(plan.amount),
                "currency": plan.currency,
                "paymentUrl": self.config.payment_url,
            }
        )
        return data
