"""
D7 Billing Email Delivery

Outbound email used by deferred billing tasks. Senders are synchronous since
they run on deferred task worker threads, never on the request path.
"""

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from core.config import Settings
from core.exceptions import EmailDeliveryError
from core.logging import get_logger

logger = get_logger("d7_billing.email_client")

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class EmailMessage:
    """A single transactional email"""

    to_email: str
    subject: str
    html_content: str
    to_name: Optional[str] = None
    attachments: List[EmailAttachment] = field(default_factory=list)
    categories: List[str] = field(default_factory=lambda: ["billing"])


class EmailSender(ABC):
    """Delivers an EmailMessage or raises EmailDeliveryError"""

    @abstractmethod
    def send(self, message: EmailMessage) -> Dict[str, Any]:
        pass


class LoggingEmailSender(EmailSender):
    """Used when no email provider is configured; logs instead of sending"""

    def send(self, message: EmailMessage) -> Dict[str, Any]:
        logger.warning(
            f"Email provider not configured, skipping send to {message.to_email}: {message.subject} "
            f"({len(message.attachments)} attachments)"
        )
        return {"success": True, "delivered": False}


class SendGridEmailSender(EmailSender):
    """SendGrid v3 mail/send over httpx"""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: Optional[str] = None,
        reply_to: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.reply_to = reply_to
        self.client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, message: EmailMessage) -> Dict[str, Any]:
        to: Dict[str, str] = {"email": message.to_email}
        if message.to_name:
            to["name"] = message.to_name

        payload: Dict[str, Any] = {
            "personalizations": [{"to": [to], "subject": message.subject}],
            "from": {"email": self.from_email, "name": self.from_name or self.from_email},
            "content": [{"type": "text/html", "value": message.html_content}],
            "categories": message.categories,
        }
        if self.reply_to:
            payload["reply_to"] = {"email": self.reply_to}
        if message.attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(attachment.content).decode("ascii"),
                    "filename": attachment.filename,
                    "type": attachment.content_type,
                    "disposition": "attachment",
                }
                for attachment in message.attachments
            ]
        return payload

    def send(self, message: EmailMessage) -> Dict[str, Any]:
        try:
            response = self.client.post(
                SENDGRID_API_URL,
                json=self.build_payload(message),
                headers=self._get_headers(),
            )
        except httpx.HTTPError as e:
            raise EmailDeliveryError(
                "Failed to reach SendGrid", email=message.to_email, reason=str(e)
            )

        if response.status_code >= 300:
            raise EmailDeliveryError(
                f"SendGrid rejected message ({response.status_code})",
                email=message.to_email,
                reason=response.text[:500],
                status_code=response.status_code,
            )

        message_id = response.headers.get("X-Message-Id")
        logger.info(f"Sent email to {message.to_email}: {message.subject} (message id {message_id})")
        return {"success": True, "delivered": True, "message_id": message_id}

    def close(self) -> None:
        self.client.close()


def build_email_sender(settings: Settings) -> EmailSender:
    """SendGrid when an API key is configured, otherwise the logging sender"""
    if settings.email_enabled:
        return SendGridEmailSender(
            api_key=settings.sendgrid_api_key.get_secret_value(),
            from_email=settings.from_email,
            from_name=settings.from_name,
            reply_to=settings.support_email,
        )
    return LoggingEmailSender()
