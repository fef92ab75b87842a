"""Tagged message payloads.

Transports build one of these variants once, at the webhook boundary; the rest
of the relay dispatches on the variant type instead of probing raw fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from app.services.errors import InvalidPayload
from app.services.timeutil import ensure_utc


class MessageKind(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    PHOTO = "photo"
    VIDEO = "video"
    OTHER = "other"


@dataclass(frozen=True)
class MediaRef:
    platform: str  # telegram, whatsapp
    file_id: Optional[str] = None
    url: Optional[str] = None
    mime_type: Optional[str] = None

    def to_json(self) -> dict[str, Any]:
        return {"platform": self.platform, "file_id": self.file_id, "url": self.url, "mime_type": self.mime_type}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "MediaRef":
        return cls(
            platform=data.get("platform") or "",
            file_id=data.get("file_id"),
            url=data.get("url"),
            mime_type=data.get("mime_type"),
        )


@dataclass(frozen=True)
class Text:
    text: str

    kind = MessageKind.TEXT

    @property
    def is_command(self) -> bool:
        return self.text.strip().startswith("/")


@dataclass(frozen=True)
class Voice:
    media: MediaRef

    kind = MessageKind.VOICE


@dataclass(frozen=True)
class Photo:
    media: MediaRef
    caption: Optional[str] = None

    kind = MessageKind.PHOTO


@dataclass(frozen=True)
class Video:
    media: MediaRef

    kind = MessageKind.VIDEO


@dataclass(frozen=True)
class Other:
    description: str = ""

    kind = MessageKind.OTHER


Payload = Union[Text, Voice, Photo, Video, Other]


def payload_to_json(payload: Payload) -> dict[str, Any]:
    if isinstance(payload, Text):
        return {"text": payload.text}
    if isinstance(payload, Photo):
        return {"media": payload.media.to_json(), "caption": payload.caption}
    if isinstance(payload, (Voice, Video)):
        return {"media": payload.media.to_json()}
    return {"description": payload.description}


def payload_from_json(kind: str, data: Optional[dict[str, Any]]) -> Payload:
    data = data or {}
    try:
        message_kind = MessageKind(kind)
    except ValueError:
        return Other(description=f"unknown kind {kind}")

    if message_kind == MessageKind.TEXT:
        return Text(text=data.get("text") or "")
    if message_kind == MessageKind.OTHER:
        return Other(description=data.get("description") or "")

    media = MediaRef.from_json(data.get("media") or {})
    if message_kind == MessageKind.VOICE:
        return Voice(media=media)
    if message_kind == MessageKind.PHOTO:
        return Photo(media=media, caption=data.get("caption"))
    return Video(media=media)


@dataclass(frozen=True)
class InboundEvent:
    conversation_id: str
    sequence_id: str
    payload: Payload
    received_at: datetime

    @property
    def kind(self) -> MessageKind:
        return self.payload.kind


def build_inbound_event(
    conversation_id: Optional[str],
    sequence_id: Any,
    payload: Payload,
    received_at: datetime,
) -> InboundEvent:
    """Validate transport fields and build the event the scheduler ingests."""
    if not conversation_id or not str(conversation_id).strip():
        raise InvalidPayload("missing conversation id")
    if sequence_id is None or not str(sequence_id).strip():
        raise InvalidPayload("missing message id")
    if received_at is None:
        raise InvalidPayload("missing timestamp")
    return InboundEvent(
        conversation_id=str(conversation_id).strip(),
        sequence_id=str(sequence_id).strip(),
        payload=payload,
        received_at=ensure_utc(received_at),
    )


PLATFORM_TELEGRAM = "telegram"
PLATFORM_WHATSAPP = "whatsapp"


def make_conversation_id(platform: str, chat_key: Any) -> str:
    return f"{platform}:{str(chat_key).strip()}"


def split_conversation_id(conversation_id: str) -> tuple[str, str]:
    platform, sep, chat_key = (conversation_id or "").partition(":")
    if not sep or not chat_key:
        raise InvalidPayload(f"malformed conversation id: {conversation_id!r}")
    return platform, chat_key
