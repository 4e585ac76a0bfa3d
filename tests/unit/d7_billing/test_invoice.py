"""
Test D7 Billing Invoices
"""

from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

from d7_billing.invoice import HtmlInvoiceRenderer, InvoiceDocument, render_confirmation_email


def payment(**overrides):
    fields = dict(
        invoice_number="INV-202501-000001",
        amount=Decimal("299"),
        currency="INR",
        payment_date=datetime(2025, 1, 5, 9, 0),
        product_info="Professional Plan - 1 Month Subscription",
        plan_name="professional",
        payment_method=None,
        merchant_transaction_id="TXN_X",
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


class TestInvoiceDocument:
    def test_from_payment(self):
        invoice = InvoiceDocument.from_payment(payment(), customer_name="Asha", customer_email="asha@example.com")

        assert invoice.invoice_number == "INV-202501-000001"
        assert invoice.amount == Decimal("299")
        assert invoice.plan_name == "Professional Plan - 1 Month Subscription"
        assert invoice.payment_method == "Online"
        assert invoice.transaction_id == "TXN_X"
        assert invoice.filename_stem == "Invoice-INV-202501-000001"

    def test_defaults_customer_name(self):
        invoice = InvoiceDocument.from_payment(payment(), customer_name="", customer_email="asha@example.com")

        assert invoice.customer_name == "Customer"

    def test_display_name_overrides_product_info(self):
        invoice = InvoiceDocument.from_payment(
            payment(), customer_name="Asha", customer_email="asha@example.com", plan_display_name="Professional"
        )

        assert invoice.plan_name == "Professional"


class TestHtmlInvoiceRenderer:
    """Test the bundled HTML invoice"""

    def test_render(self):
        invoice = InvoiceDocument.from_payment(payment(), customer_name="Asha", customer_email="asha@example.com")

        rendered = HtmlInvoiceRenderer(company_name="One Client Report", support_email="help@example.com").render(
            invoice
        )
        html = rendered.content.decode("utf-8")

        assert rendered.filename == "Invoice-INV-202501-000001.html"
        assert rendered.content_type == "text/html"
        assert "INV-202501-000001" in html
        assert "INR 299.00" in html
        assert "5 Jan 2025" in html
        assert "help@example.com" in html
        assert "TXN_X" in html

    def test_customer_fields_are_escaped(self):
        invoice = InvoiceDocument.from_payment(
            payment(), customer_name="<script>alert(1)</script>", customer_email="asha@example.com"
        )

        html = HtmlInvoiceRenderer().render(invoice).content.decode("utf-8")

        assert "<script>" not in html
        assert "&lt;script&gt;" in html


class TestConfirmationEmail:
    def test_body_mentions_plan_and_amount(self):
        html = render_confirmation_email("Asha", "Agency", Decimal("999"), company_name="One Client Report")

        assert "Hi Asha" in html
        assert "<strong>Agency</strong>" in html
        assert "INR 999.00" in html
        assert "The One Client Report Team" in html
