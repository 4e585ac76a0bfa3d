"""
Test D7 Billing API

Gateway callback acknowledgments and redirects, checkout, subscription
management, payment history and invoice download.
"""

import re
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.exceptions import PersistenceFailureError
from d7_billing import hash_codec
from d7_billing.api import (get_current_user_id, get_gateway_config, get_order_issuer, get_reconciler,
                            router, subscription_router)
from d7_billing.models import PaymentRecord, Subscription
from d7_billing.orders import OrderIssuer
from d7_billing.reconciler import CallbackReconciler
from database.session import get_db

app = FastAPI()
app.include_router(router)
app.include_router(subscription_router)
client = TestClient(app)

INVOICE_PATTERN = r"INV-\d{6}-000001"


@pytest.fixture(autouse=True)
def clear_dependency_overrides():
    """Clear dependency overrides after each test"""
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def api_reconciler(gateway_config, session_factory, email_sender):
    # Real clock: the subscription endpoints check access against the current time
    return CallbackReconciler(gateway_config, session_factory, email_sender=email_sender)


@pytest.fixture
def wired(api_reconciler, gateway_config, session_factory, user_id):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_reconciler] = lambda: api_reconciler
    app.dependency_overrides[get_gateway_config] = lambda: gateway_config
    app.dependency_overrides[get_order_issuer] = lambda: OrderIssuer(gateway_config)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user_id] = lambda: user_id
    return api_reconciler


def redirect_target(response):
    location = urlparse(response.headers["location"])
    return f"{location.scheme}://{location.netloc}{location.path}", {
        name: values[0] for name, values in parse_qs(location.query).items()
    }


def pay(make_callback, **kwargs):
    response = client.post("/payment/webhook", data=make_callback(**kwargs))
    assert response.status_code == 200
    return response.json()


class TestWebhook:
    """Test the server-to-server notification endpoint"""

    def test_success_ack(self, wired, make_callback):
        response = client.post("/payment/webhook", data=make_callback())

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["message"] == "Payment processed successfully"
        assert body["txnid"] == "TXN_X"
        assert body["gatewayTransactionId"] == "403993715521937565"
        assert re.fullmatch(INVOICE_PATTERN, body["invoiceNumber"])

    def test_replay_ack(self, wired, make_callback):
        first = pay(make_callback)

        body = pay(make_callback)

        assert body["message"] == "Already processed"
        assert body["invoiceNumber"] == first["invoiceNumber"]

    def test_json_payload(self, wired, make_callback):
        response = client.post("/payment/webhook", json=make_callback())

        assert response.status_code == 200
        assert response.json()["message"] == "Payment processed successfully"

    def test_failed_payment_ack(self, wired, make_callback):
        body = pay(make_callback, status="failure")

        assert body["message"] == "Webhook processed (payment failed)"
        assert body["invoiceNumber"] is None

    def test_invalid_hash(self, wired, make_callback):
        callback = make_callback()
        callback["hash"] = "0" * 128

        response = client.post("/payment/webhook", data=callback)

        assert response.status_code == 401
        assert response.json() == {
            "status": "error",
            "message": "Invalid hash",
            "txnid": "TXN_X",
            "gatewayTransactionId": "403993715521937565",
        }

    def test_missing_fields(self, wired, make_callback):
        callback = make_callback()
        del callback["udf1"]

        response = client.post("/payment/webhook", data=callback)

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["message"] == "Missing required fields: udf1"
        assert body["txnid"] == "TXN_X"

    def test_unknown_user(self, wired, make_callback):
        response = client.post("/payment/webhook", data=make_callback(user="ghost"))

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["gatewayTransactionId"] == "403993715521937565"

    def test_persistence_failure_asks_for_retry(self, wired, make_callback):
        with patch.object(wired, "reconcile", side_effect=PersistenceFailureError("Failed to reconcile payment")):
            response = client.post("/payment/webhook", data=make_callback())

        assert response.status_code == 503
        assert response.json() == {
            "status": "error",
            "message": "Failed to reconcile payment",
            "txnid": "TXN_X",
            "gatewayTransactionId": "403993715521937565",
        }

    def test_malformed_json(self, wired):
        response = client.post(
            "/payment/webhook", content=b"{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json() == {
            "status": "error",
            "message": "Invalid payload",
            "txnid": None,
            "gatewayTransactionId": None,
        }

    def test_replay_with_altered_mihpayid_is_already_processed(self, wired, make_callback, session_factory):
        callback = make_callback()
        first = pay(make_callback)

        response = client.post("/payment/success", data=dict(callback, mihpayid="999999"), follow_redirects=False)

        assert redirect_target(response)[1]["invoice"] == first["invoiceNumber"]
        with session_factory() as db:
            assert db.query(PaymentRecord).count() == 1
            assert db.query(Subscription).count() == 1


class TestBrowserRedirects:
    """Test success and failure redirect endpoints"""

    def test_success_redirect(self, wired, make_callback):
        response = client.post("/payment/success", data=make_callback(), follow_redirects=False)

        assert response.status_code == 303
        url, params = redirect_target(response)
        assert url == "https://app.example.com/subscribe/success"
        assert params["txnid"] == "TXN_X"
        assert params["plan"] == "professional"
        assert re.fullmatch(INVOICE_PATTERN, params["invoice"])

    def test_success_redirect_after_webhook(self, wired, make_callback):
        ack = pay(make_callback)

        response = client.post("/payment/success", data=make_callback(), follow_redirects=False)

        url, params = redirect_target(response)
        assert url == "https://app.example.com/subscribe/success"
        assert params["invoice"] == ack["invoiceNumber"]

    def test_failure_redirect_for_failed_payment(self, wired, make_callback):
        callback = make_callback(status="failure", error_Message="Bank declined")

        response = client.post("/payment/failure", data=callback, follow_redirects=False)

        assert response.status_code == 303
        url, params = redirect_target(response)
        assert url == "https://app.example.com/subscribe/failure"
        assert params == {"txnid": "TXN_X", "error": "Bank declined", "plan": "professional"}

    def test_failure_redirect_without_gateway_message(self, wired, make_callback):
        response = client.post("/payment/failure", data=make_callback(status="failure"), follow_redirects=False)

        assert redirect_target(response)[1]["error"] == "payment_failed"

    def test_late_success_on_failure_endpoint(self, wired, make_callback):
        response = client.post("/payment/failure", data=make_callback(), follow_redirects=False)

        assert redirect_target(response)[0] == "https://app.example.com/subscribe/success"

    def test_invalid_hash_redirects_to_failure(self, wired, make_callback):
        callback = make_callback()
        callback["amount"] = "1.00"

        response = client.post("/payment/success", data=callback, follow_redirects=False)

        url, params = redirect_target(response)
        assert url == "https://app.example.com/subscribe/failure"
        assert params["error"] == "invalid_hash"
        assert params["txnid"] == "TXN_X"

    def test_missing_fields_redirect(self, wired, make_callback):
        callback = make_callback()
        del callback["hash"]

        response = client.post("/payment/success", data=callback, follow_redirects=False)

        assert redirect_target(response)[1]["error"] == "missing_fields"

    def test_unknown_user_redirect(self, wired, make_callback):
        response = client.post("/payment/success", data=make_callback(user="ghost"), follow_redirects=False)

        assert redirect_target(response)[1]["error"] == "user_not_found"

    def test_unexpected_error_still_redirects(self, wired, make_callback):
        with patch.object(wired, "reconcile", side_effect=RuntimeError("boom")):
            response = client.post("/payment/success", data=make_callback(), follow_redirects=False)

        assert response.status_code == 303
        assert redirect_target(response)[1]["error"] == "processing_error"


class TestCreateOrder:
    """Test checkout order creation"""

    def test_create_order(self, wired):
        response = client.post("/payment/create-order", json={"plan": "Professional"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["amount"] == "299.00"
        assert data["key"] == "TESTKEY"
        assert data["udf1"] == "user-1"
        assert data["udf2"] == "professional"
        assert data["surl"] == "https://api.example.com/payment/success"
        assert data["paymentUrl"] == "https://test.payu.in/_payment"
        assert data["hash"] == hash_codec.sign(data, "TESTSALT")

    def test_enterprise_is_rejected(self, wired):
        response = client.post("/payment/create-order", json={"plan": "enterprise"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PLAN"

    def test_requires_authentication(self, wired):
        del app.dependency_overrides[get_current_user_id]

        response = client.post("/payment/create-order", json={"plan": "professional"})

        assert response.status_code == 401


class TestSubscriptionEndpoints:
    """Test subscription status and cancellation"""

    def test_status_without_subscription(self, wired):
        response = client.get("/subscription")

        assert response.status_code == 200
        body = response.json()
        assert body["subscription"] is None
        assert body["hasAccess"] is False
        assert body["usageTier"] == "free"
        assert body["subscriptionStatus"] == "none"

    def test_status_after_payment(self, wired, make_callback):
        pay(make_callback)

        body = client.get("/subscription").json()

        assert body["hasAccess"] is True
        assert body["usageTier"] == "pro"
        assert body["subscriptionStatus"] == "active"
        assert body["subscription"]["plan"] == "professional"
        assert body["subscription"]["status"] == "active"

    def test_cancel_keeps_access(self, wired, make_callback):
        pay(make_callback)
        end_date = client.get("/subscription").json()["subscriptionEndDate"]

        response = client.post("/subscription/cancel", json={"reason": "Switching tools"})

        assert response.status_code == 200
        assert response.json()["endDate"] == end_date
        body = client.get("/subscription").json()
        assert body["subscriptionStatus"] == "cancelled"
        assert body["hasAccess"] is True

    def test_cancel_without_subscription(self, wired):
        response = client.post("/subscription/cancel")

        assert response.status_code == 404
        assert response.json()["error"] == "No active subscription found"


class TestHistoryAndInvoices:
    """Test payment history and invoice download"""

    def test_history(self, wired, make_callback):
        pay(make_callback, status="failure", mihpayid="1")
        pay(make_callback, mihpayid="2")

        body = client.get("/payment/history").json()

        assert body["count"] == 2
        statuses = sorted(payment["status"] for payment in body["payments"])
        assert statuses == ["failed", "success"]

    def test_download_invoice(self, wired, make_callback):
        invoice_number = pay(make_callback)["invoiceNumber"]

        response = client.get(f"/payment/invoices/{invoice_number}")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert f'filename="Invoice-{invoice_number}.html"' in response.headers["content-disposition"]
        assert invoice_number in response.text
        assert "Asha" in response.text

    def test_other_users_invoice_is_not_found(self, wired, make_callback):
        invoice_number = pay(make_callback)["invoiceNumber"]
        app.dependency_overrides[get_current_user_id] = lambda: "user-2"

        response = client.get(f"/payment/invoices/{invoice_number}")

        assert response.status_code == 404

    def test_unknown_invoice(self, wired):
        assert client.get("/payment/invoices/INV-202501-999999").status_code == 404
