"""WhatsApp delivery through the Twilio REST API."""

import re
from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import DeliveryError

logger = get_logger("twilio_service")

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
WHATSAPP_PREFIX = "whatsapp:"


def strip_whatsapp_prefix(number: str) -> str:
    number = (number or "").strip()
    if number.startswith(WHATSAPP_PREFIX):
        return number[len(WHATSAPP_PREFIX) :]
    return number


def is_valid_whatsapp_number(number: Optional[str]) -> bool:
    return bool(number) and bool(E164_PATTERN.match(strip_whatsapp_prefix(number)))


def to_whatsapp_address(number: str) -> str:
    return f"{WHATSAPP_PREFIX}{strip_whatsapp_prefix(number)}"


class TwilioService:
    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, http_client: httpx.AsyncClient):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.http_client = http_client
        self.base_url = self.BASE_URL.format(sid=account_sid)

    @property
    def auth(self) -> tuple[str, str]:
        return (self.account_sid, self.auth_token)

    async def send_whatsapp(self, to: str, body: str) -> str:
        """Send a WhatsApp message, returns the Twilio message SID."""
        data = {
            "From": to_whatsapp_address(self.from_number),
            "To": to_whatsapp_address(to),
            "Body": body,
        }
        try:
            response = await self.http_client.post(
                f"{self.base_url}/Messages.json",
                data=data,
                auth=self.auth,
                timeout=30.0,
            )
        except httpx.HTTPError as exc:
            logger.error(f"Twilio API error: {exc}")
            raise DeliveryError(f"twilio send failed: {exc}") from exc

        if response.status_code >= 300:
            logger.warning(f"Twilio send rejected: {response.status_code} {response.text}")
            raise DeliveryError(f"twilio send rejected: {response.status_code}", response.status_code)

        # Twilio already accepted the message, an unreadable body only loses the SID.
        try:
            body = response.json()
        except ValueError:
            body = None
        sid = body.get("sid", "") if isinstance(body, dict) else ""
        logger.info(f"WhatsApp message sent: sid={sid}")
        return sid
