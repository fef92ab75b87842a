from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.services.errors import InvalidPayload
from app.services.payload import (
    PLATFORM_WHATSAPP,
    InboundEvent,
    MediaRef,
    Other,
    Payload,
    Photo,
    Text,
    Video,
    Voice,
    build_inbound_event,
    make_conversation_id,
)
from app.services.twilio_service import is_valid_whatsapp_number, strip_whatsapp_prefix


class TwilioInboundMessage(BaseModel):
    """Form fields Twilio posts for an incoming WhatsApp message."""

    message_sid: Optional[str] = Field(default=None, alias="MessageSid")
    from_number: Optional[str] = Field(default=None, alias="From")
    body: str = Field(default="", alias="Body")
    num_media: int = Field(default=0, alias="NumMedia")
    media_url: Optional[str] = Field(default=None, alias="MediaUrl0")
    media_content_type: Optional[str] = Field(default=None, alias="MediaContentType0")

    def to_payload(self) -> Payload:
        if self.num_media > 0 and self.media_url:
            mime_type = (self.media_content_type or "").lower()
            media = MediaRef(PLATFORM_WHATSAPP, url=self.media_url, mime_type=mime_type or None)
            if mime_type.startswith("audio/"):
                return Voice(media=media)
            if mime_type.startswith("image/"):
                return Photo(media=media, caption=self.body or None)
            if mime_type.startswith("video/"):
                return Video(media=media)
            return Other(description=f"unsupported media {mime_type or 'unknown'}")
        return Text(text=self.body)

    def to_inbound_event(self, received_at: datetime) -> InboundEvent:
        if not is_valid_whatsapp_number(self.from_number):
            raise InvalidPayload(f"invalid WhatsApp sender: {self.from_number!r}")
        return build_inbound_event(
            make_conversation_id(PLATFORM_WHATSAPP, strip_whatsapp_prefix(self.from_number)),
            self.message_sid,
            self.to_payload(),
            received_at,
        )
