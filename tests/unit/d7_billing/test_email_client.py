"""
Test D7 Billing Email Delivery

SendGrid requests are exercised against an httpx mock transport.
"""

import base64
import json

import httpx
import pytest

from core.config import Settings
from core.exceptions import EmailDeliveryError
from d7_billing.email_client import (SENDGRID_API_URL, EmailAttachment, EmailMessage, LoggingEmailSender,
                                     SendGridEmailSender, build_email_sender)


def message():
    return EmailMessage(
        to_email="asha@example.com",
        to_name="Asha",
        subject="Payment Successful - Professional",
        html_content="<p>Thanks</p>",
        attachments=[EmailAttachment("Invoice-INV-202501-000001.html", b"<html></html>", "text/html")],
    )


def sender_with(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SendGridEmailSender(
        api_key="SG.test",
        from_email="noreply@example.com",
        from_name="One Client Report",
        reply_to="support@example.com",
        client=client,
    )


class TestSendGridEmailSender:
    """Test SendGrid payloads and error mapping"""

    def test_send_posts_payload(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(202, headers={"X-Message-Id": "msg-1"})

        result = sender_with(handler).send(message())

        assert result == {"success": True, "delivered": True, "message_id": "msg-1"}
        assert captured["url"] == SENDGRID_API_URL
        assert captured["auth"] == "Bearer SG.test"
        body = captured["body"]
        assert body["personalizations"][0]["to"] == [{"email": "asha@example.com", "name": "Asha"}]
        assert body["from"] == {"email": "noreply@example.com", "name": "One Client Report"}
        assert body["reply_to"] == {"email": "support@example.com"}
        attachment = body["attachments"][0]
        assert attachment["filename"] == "Invoice-INV-202501-000001.html"
        assert base64.b64decode(attachment["content"]) == b"<html></html>"
        assert attachment["disposition"] == "attachment"

    def test_rejected_message_raises(self):
        sender = sender_with(lambda request: httpx.Response(400, text="bad request"))

        with pytest.raises(EmailDeliveryError) as exc_info:
            sender.send(message())

        assert exc_info.value.details["email"] == "asha@example.com"
        assert exc_info.value.details["status_code"] == 400

    def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(EmailDeliveryError):
            sender_with(handler).send(message())

    def test_payload_without_attachments(self):
        sender = sender_with(lambda request: httpx.Response(202))
        plain = EmailMessage(to_email="asha@example.com", subject="Hi", html_content="<p>Hi</p>")

        payload = sender.build_payload(plain)

        assert "attachments" not in payload
        assert payload["personalizations"][0]["to"] == [{"email": "asha@example.com"}]
        assert payload["categories"] == ["billing"]


class TestBuildEmailSender:
    def test_without_api_key_logs_only(self):
        sender = build_email_sender(Settings(sendgrid_api_key=None))

        assert isinstance(sender, LoggingEmailSender)
        assert sender.send(message()) == {"success": True, "delivered": False}

    def test_with_api_key_uses_sendgrid(self):
        sender = build_email_sender(Settings(sendgrid_api_key="SG.real"))

        assert isinstance(sender, SendGridEmailSender)
        assert sender.api_key == "SG.real"
        sender.close()
