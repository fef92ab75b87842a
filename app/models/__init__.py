from app.models.conversation_profile import ConversationProfile
from app.models.inbound_message import InboundMessage

__all__ = [
    "InboundMessage",
    "ConversationProfile",
]
