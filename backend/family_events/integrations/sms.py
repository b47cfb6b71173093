"""SMS gateway capability and the Twilio adapter.

Only the outbound send lives here; inbound replies arrive through the
``/api/webhooks/sms`` route.
"""

from typing import Protocol, runtime_checkable

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from family_events.core.exceptions import MessagingError

logger = structlog.get_logger(__name__)


@runtime_checkable
class SmsGateway(Protocol):
    async def send(self, destination: str, text: str) -> str:
        """Send ``text`` to ``destination`` and return the gateway message id.

        Raises:
            MessagingError: the gateway rejected or failed the send
        """
        ...


class _TransientSmsError(MessagingError):
    """5xx, 429 or transport failure; worth retrying."""


class TwilioSmsGateway:
    """Sends SMS through Twilio's Messages REST resource."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not account_sid or not auth_token or not from_number:
            raise ValueError("Twilio account SID, auth token and from number are required")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def send(self, destination: str, text: str) -> str:
        try:
            return await self._send_with_retry(destination, text)
        except _TransientSmsError as exc:
            raise MessagingError(f"SMS to {destination} failed after retries: {exc}") from exc

    @retry(
        retry=retry_if_exception_type(_TransientSmsError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "sms_send_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def _send_with_retry(self, destination: str, text: str) -> str:
        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    data={"To": destination, "From": self.from_number, "Body": text},
                    auth=(self.account_sid, self.auth_token),
                )
        except httpx.TransportError as exc:
            raise _TransientSmsError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientSmsError(f"Twilio returned {response.status_code}")
        if response.status_code not in (200, 201):
            raise MessagingError(f"Twilio rejected message ({response.status_code}): {response.text[:200]}")

        sid = response.json().get("sid")
        if not sid:
            raise MessagingError("Twilio response had no message sid")
        logger.info("sms_sent", message_sid=sid, destination=destination, length=len(text))
        return sid
