"""
D7 Billing Invoices

Invoice documents and their rendering. The renderer is an interface so a PDF
implementation can replace the bundled HTML one without touching callers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from jinja2 import Environment, StrictUndefined

from .hash_codec import format_amount

INVOICE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Invoice {{ invoice.invoice_number }}</title>
</head>
<body style="font-family: Arial, sans-serif; color: #333; max-width: 720px; margin: 0 auto;">
  <header>
    <h1>{{ company_name }}</h1>
    <p><strong>INVOICE</strong> {{ invoice.invoice_number }} <span style="color: #16a34a;">PAID</span></p>
  </header>
  <section>
    <p>Billed to: {{ invoice.customer_name }} &lt;{{ invoice.customer_email }}&gt;</p>
    <p>Date: {{ invoice.date | invoice_date }}</p>
  </section>
  <table style="width: 100%; border-collapse: collapse;">
    <thead>
      <tr><th align="left">DESCRIPTION</th><th align="right">QTY</th><th align="right">RATE</th><th align="right">AMOUNT</th></tr>
    </thead>
    <tbody>
      <tr>
        <td>{{ invoice.plan_name }}</td>
        <td align="right">1</td>
        <td align="right">{{ invoice.currency }} {{ invoice.amount | money }}</td>
        <td align="right">{{ invoice.currency }} {{ invoice.amount | money }}</td>
      </tr>
    </tbody>
  </table>
  <p align="right"><strong>Total: {{ invoice.currency }} {{ invoice.amount | money }}</strong></p>
  <footer>
    <p>Method: {{ invoice.payment_method }}</p>
    <p>Transaction ID: {{ invoice.transaction_id }}</p>
    <p>Questions? Contact {{ support_email }}</p>
  </footer>
</body>
</html>
"""

CONFIRMATION_EMAIL_TEMPLATE = """<div style="font-family: Arial, sans-serif; color: #333;">
  <h1>Welcome to {{ company_name }}!</h1>
  <p>Hi {{ customer_name }},</p>
  <p>Thank you for subscribing to the <strong>{{ plan_name }}</strong> plan.</p>
  <p>We have received your payment of <strong>{{ currency }} {{ amount | money }}</strong>.</p>
  <p>Your invoice is attached to this email.</p>
  <br/>
  <p>Best regards,</p>
  <p>The {{ company_name }} Team</p>
</div>
"""


@dataclass(frozen=True)
class InvoiceDocument:
    """Everything printed on an invoice"""

    invoice_number: str
    customer_name: str
    customer_email: str
    amount: Decimal
    currency: str
    date: datetime
    plan_name: str
    payment_method: str
    transaction_id: str

    @classmethod
    def from_payment(cls, record: Any, customer_name: str, customer_email: str, plan_display_name: Optional[str] = None):
        """Build from a PaymentRecord that already carries its invoice number"""
        return cls(
            invoice_number=record.invoice_number,
            customer_name=customer_name or "Customer",
            customer_email=customer_email,
            amount=Decimal(str(record.amount)),
            currency=record.currency,
            date=record.payment_date,
            plan_name=plan_display_name or record.product_info or record.plan_name,
            payment_method=record.payment_method or "Online",
            transaction_id=record.merchant_transaction_id,
        )

    @property
    def filename_stem(self) -> str:
        return f"Invoice-{self.invoice_number}"


@dataclass(frozen=True)
class RenderedInvoice:
    filename: str
    content: bytes
    content_type: str


class InvoiceRenderer(ABC):
    """Turns an InvoiceDocument into an attachable file"""

    @abstractmethod
    def render(self, invoice: InvoiceDocument) -> RenderedInvoice:
        pass


def _money(value: Any) -> str:
    return format_amount(value)


def _invoice_date(value: datetime) -> str:
    return f"{value.day} {value:%b %Y}"


def build_environment() -> Environment:
    env = Environment(autoescape=True, undefined=StrictUndefined)
    env.filters["money"] = _money
    env.filters["invoice_date"] = _invoice_date
    return env


class HtmlInvoiceRenderer(InvoiceRenderer):
    """Renders invoices as standalone HTML documents"""

    def __init__(self, company_name: str = "One Client Report", support_email: str = "support@oneclientreport.com"):
        self.company_name = company_name
        self.support_email = support_email
        self.env = build_environment()
        self.template = self.env.from_string(INVOICE_TEMPLATE)

    def render(self, invoice: InvoiceDocument) -> RenderedInvoice:
        html = self.template.render(
            invoice=invoice,
            company_name=self.company_name,
            support_email=self.support_email,
        )
        return RenderedInvoice(
            filename=f"{invoice.filename_stem}.html",
            content=html.encode("utf-8"),
            content_type="text/html",
        )


def render_confirmation_email(
    customer_name: str,
    plan_name: str,
    amount: Decimal,
    currency: str = "INR",
    company_name: str = "One Client Report",
) -> str:
    """HTML body of the payment confirmation email"""
    template = build_environment().from_string(CONFIRMATION_EMAIL_TEMPLATE)
    context: Dict[str, Any] = {
        "customer_name": customer_name or "Customer",
        "plan_name": plan_name,
        "amount": amount,
        "currency": currency,
        "company_name": company_name,
    }
    return template.render(**context)
