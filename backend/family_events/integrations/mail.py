"""Report sink capability and the Gmail adapter."""

import base64
from email.message import EmailMessage
from typing import Protocol, runtime_checkable

import httpx
import structlog

from family_events.core.exceptions import ReportDeliveryError

logger = structlog.get_logger(__name__)


@runtime_checkable
class ReportSink(Protocol):
    async def deliver(self, subject: str, body: str, recipients: list[str]) -> str:
        """Deliver a plain-text report and return the provider message id.

        Raises:
            ReportDeliveryError: delivery failed
        """
        ...


class GmailReportSink:
    """Sends reports through the Gmail API ``users.messages.send`` endpoint."""

    def __init__(
        self,
        access_token: str,
        sender: str,
        base_url: str = "https://gmail.googleapis.com/gmail/v1",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token
        self.sender = sender
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _build_raw(self, subject: str, body: str, recipients: list[str]) -> str:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content(body)
        return base64.urlsafe_b64encode(message.as_bytes()).decode()

    async def deliver(self, subject: str, body: str, recipients: list[str]) -> str:
        if not self.access_token:
            raise ReportDeliveryError("Gmail is not configured")
        if not recipients:
            raise ReportDeliveryError("No report recipients configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/users/me/messages/send",
                    json={"raw": self._build_raw(subject, body, recipients)},
                    headers={"Authorization": f"Bearer {self.access_token}"},
                )
        except httpx.TransportError as exc:
            raise ReportDeliveryError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code != 200:
            raise ReportDeliveryError(f"Gmail returned {response.status_code}: {response.text[:200]}")
        message_id = response.json().get("id", "")
        logger.info("report_email_sent", message_id=message_id, recipients=len(recipients))
        return message_id
