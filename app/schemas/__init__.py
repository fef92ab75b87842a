from app.schemas.relay import ConversationStatusResponse, RetentionResponse, SweepResponse, WebhookResponse
from app.schemas.telegram import TelegramMessage, TelegramUpdate
from app.schemas.whatsapp import TwilioInboundMessage

__all__ = [
    "WebhookResponse",
    "SweepResponse",
    "RetentionResponse",
    "ConversationStatusResponse",
    "TelegramMessage",
    "TelegramUpdate",
    "TwilioInboundMessage",
]
