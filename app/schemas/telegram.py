from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.services.payload import (
    PLATFORM_TELEGRAM,
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
from app.services.timeutil import from_unix


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: str
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str  # private, group, supergroup, channel
    title: Optional[str] = None
    username: Optional[str] = None


class TelegramPhotoSize(BaseModel):
    file_id: str
    file_unique_id: str
    width: int
    height: int
    file_size: Optional[int] = None


class TelegramAudio(BaseModel):
    file_id: str
    file_unique_id: str
    duration: int
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class TelegramVoice(BaseModel):
    file_id: str
    file_unique_id: str
    duration: int
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class TelegramVideo(BaseModel):
    file_id: str
    file_unique_id: str
    width: int
    height: int
    duration: int
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class TelegramMessage(BaseModel):
    message_id: int
    date: int
    chat: TelegramChat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")  # "from" is reserved in Python
    text: Optional[str] = None
    caption: Optional[str] = None
    photo: Optional[list[TelegramPhotoSize]] = None
    audio: Optional[TelegramAudio] = None
    voice: Optional[TelegramVoice] = None
    video: Optional[TelegramVideo] = None
    video_note: Optional[dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_from_bot(self) -> bool:
        return bool(self.from_user and self.from_user.is_bot)

    def to_payload(self) -> Payload:
        if self.text is not None:
            return Text(text=self.text)
        if self.voice:
            return Voice(media=MediaRef(PLATFORM_TELEGRAM, file_id=self.voice.file_id, mime_type=self.voice.mime_type))
        if self.audio:
            return Voice(media=MediaRef(PLATFORM_TELEGRAM, file_id=self.audio.file_id, mime_type=self.audio.mime_type))
        if self.photo:
            largest = max(self.photo, key=lambda size: size.width * size.height)
            return Photo(media=MediaRef(PLATFORM_TELEGRAM, file_id=largest.file_id), caption=self.caption)
        if self.video:
            return Video(media=MediaRef(PLATFORM_TELEGRAM, file_id=self.video.file_id, mime_type=self.video.mime_type))
        if self.video_note:
            return Video(media=MediaRef(PLATFORM_TELEGRAM, file_id=self.video_note.get("file_id")))
        return Other(description="unsupported telegram message")

    def to_inbound_event(self) -> InboundEvent:
        return build_inbound_event(
            make_conversation_id(PLATFORM_TELEGRAM, self.chat.id),
            self.message_id,
            self.to_payload(),
            from_unix(self.date),
        )


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None
