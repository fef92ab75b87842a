"""Builds the ordered oracle payload for one claimed batch."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from app.logging_config import get_logger
from app.models import InboundMessage
from app.services import replies
from app.services.errors import ImageProcessingError, TranscriptionError
from app.services.message_store import chronological_key
from app.services.payload import MediaRef, Photo, Text, Voice, payload_from_json

logger = get_logger("context_assembler")


class MediaResolver(Protocol):
    async def transcribe(self, media: MediaRef) -> str: ...

    async def describe(self, media: MediaRef) -> tuple[str, str]: ...


def text_part(text: str) -> dict:
    return {"type": "text", "text": text}


def image_part(data_url: str) -> dict:
    return {"type": "image_url", "image_url": {"url": data_url}}


def _log_degraded(event: str, message: InboundMessage, exc: Exception) -> None:
    logger.warning(
        event,
        extra={
            "context": {
                "conversation_id": message.conversation_id,
                "message_id": str(message.id),
                "error": str(exc),
            }
        },
    )


@dataclass
class ResolvedMessage:
    message: InboundMessage
    parts: list[dict] = field(default_factory=list)
    transcript: Optional[str] = None
    degraded: bool = False


@dataclass
class AssembledContext:
    parts: list[dict]
    new_message_count: int
    history_count: int
    new_units: int
    transcripts: dict[uuid.UUID, str] = field(default_factory=dict)
    degraded_ids: list[uuid.UUID] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.new_units == 0


class ContextAssembler:
    def __init__(self, media: Optional[MediaResolver]):
        self.media = media

    async def resolve(self, message: InboundMessage) -> ResolvedMessage:
        payload = payload_from_json(message.kind, message.payload_json)
        resolved = ResolvedMessage(message=message)

        if isinstance(payload, Text):
            if payload.text.strip() and not payload.is_command:
                resolved.parts.append(text_part(payload.text))
            return resolved

        if isinstance(payload, Voice):
            if message.resolved_text:
                resolved.parts.append(text_part(replies.TRANSCRIPT_TEMPLATE.format(text=message.resolved_text)))
                return resolved
            try:
                if self.media is None:
                    raise TranscriptionError("media resolution is not configured")
                transcript = await self.media.transcribe(payload.media)
                resolved.transcript = transcript
                resolved.parts.append(text_part(replies.TRANSCRIPT_TEMPLATE.format(text=transcript)))
            except TranscriptionError as exc:
                _log_degraded("Transcription failed, using placeholder", message, exc)
                resolved.degraded = True
                resolved.parts.append(text_part(replies.TRANSCRIPTION_FAILED))
            return resolved

        if isinstance(payload, Photo):
            try:
                if self.media is None:
                    raise ImageProcessingError("media resolution is not configured")
                prompt, data_url = await self.media.describe(payload.media)
                resolved.parts.append(text_part(prompt))
                resolved.parts.append(image_part(data_url))
            except ImageProcessingError as exc:
                _log_degraded("Image processing failed, using placeholder", message, exc)
                resolved.degraded = True
                resolved.parts.append(text_part(replies.IMAGE_FAILED))
            if payload.caption and payload.caption.strip():
                resolved.parts.append(text_part(payload.caption.strip()))
            return resolved

        # Video and Other never reach the oracle.
        return resolved

    async def _resolve_all(self, messages: Iterable[InboundMessage]) -> list[ResolvedMessage]:
        return list(await asyncio.gather(*(self.resolve(message) for message in messages)))

    async def assemble(
        self,
        claimed: list[InboundMessage],
        history: list[InboundMessage],
    ) -> AssembledContext:
        """Merge claimed and historical messages chronologically and resolve them into content parts.

        History is only resolved when the claimed batch carries content of its own.
        """
        resolved_new = await self._resolve_all(claimed)
        new_units = sum(len(item.parts) for item in resolved_new)

        resolved_history: list[ResolvedMessage] = []
        if new_units:
            claimed_ids = {message.id for message in claimed}
            resolved_history = await self._resolve_all(message for message in history if message.id not in claimed_ids)

        merged = sorted(resolved_new + resolved_history, key=lambda item: chronological_key(item.message))
        parts = [part for item in merged for part in item.parts]

        return AssembledContext(
            parts=parts,
            new_message_count=len(claimed),
            history_count=len(resolved_history),
            new_units=new_units,
            transcripts={item.message.id: item.transcript for item in merged if item.transcript},
            degraded_ids=[item.message.id for item in merged if item.degraded],
        )
