from typing import Optional

from app.logging_config import get_logger
from app.services.errors import DeliveryError, InvalidPayload
from app.services.payload import PLATFORM_TELEGRAM, PLATFORM_WHATSAPP, split_conversation_id
from app.services.telegram_service import TelegramService
from app.services.twilio_service import TwilioService

logger = get_logger("delivery_service")


class DeliveryRouter:
    """Routes outbound text to the platform a conversation came from."""

    def __init__(
        self,
        telegram: Optional[TelegramService] = None,
        twilio: Optional[TwilioService] = None,
    ):
        self.telegram = telegram
        self.twilio = twilio

    async def send(self, conversation_id: str, text: str) -> None:
        """Deliver text. Raises DeliveryError on any failure."""
        try:
            platform, chat_key = split_conversation_id(conversation_id)
        except InvalidPayload as exc:
            raise DeliveryError(str(exc)) from exc

        if platform == PLATFORM_TELEGRAM:
            if self.telegram is None:
                raise DeliveryError("telegram delivery is not configured")
            await self.telegram.send_message(chat_key, text)
            return
        if platform == PLATFORM_WHATSAPP:
            if self.twilio is None:
                raise DeliveryError("whatsapp delivery is not configured")
            await self.twilio.send_whatsapp(chat_key, text)
            return
        raise DeliveryError(f"unknown platform: {platform}")

    async def send_best_effort(self, conversation_id: str, text: str) -> bool:
        """Single delivery attempt; failures are logged, never raised."""
        try:
            await self.send(conversation_id, text)
            return True
        except DeliveryError as exc:
            logger.error(
                "Best-effort delivery failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
            return False
