"""Voice transcription and image preparation for the oracle."""

import base64
import mimetypes
from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import DeliveryError, ImageProcessingError, MediaError, TranscriptionError
from app.services.llm.base import TranscriptionProvider
from app.services.payload import PLATFORM_TELEGRAM, PLATFORM_WHATSAPP, MediaRef
from app.services.telegram_service import TelegramService
from app.services.twilio_service import TwilioService

logger = get_logger("media_service")

DEFAULT_AUDIO_MIME = "audio/ogg"
DEFAULT_IMAGE_MIME = "image/jpeg"


def _guess_extension(mime_type: Optional[str], default: str) -> str:
    if mime_type:
        ext = mimetypes.guess_extension(mime_type.split(";")[0].strip())
        if ext:
            return ".ogg" if ext == ".oga" else ext
    return default


class MediaService:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        transcriber: Optional[TranscriptionProvider],
        telegram: Optional[TelegramService] = None,
        twilio: Optional[TwilioService] = None,
        max_bytes: int = 20 * 1024 * 1024,
        image_prompt: str = "Analiza la siguiente imagen enviada por el usuario.",
    ):
        self.http_client = http_client
        self.transcriber = transcriber
        self.telegram = telegram
        self.twilio = twilio
        self.max_bytes = max_bytes
        self.image_prompt = image_prompt

    async def _resolve_url(self, media: MediaRef) -> tuple[str, Optional[tuple[str, str]]]:
        if media.platform == PLATFORM_TELEGRAM:
            if self.telegram is None:
                raise MediaError("telegram media is not configured")
            if not media.file_id:
                raise MediaError("telegram media without file_id")
            try:
                return await self.telegram.get_file_url(media.file_id), None
            except DeliveryError as exc:
                raise MediaError(f"telegram getFile failed: {exc}") from exc
        if media.platform == PLATFORM_WHATSAPP:
            if not media.url:
                raise MediaError("whatsapp media without url")
            auth = self.twilio.auth if self.twilio is not None else None
            return media.url, auth
        raise MediaError(f"unknown media platform: {media.platform}")

    async def fetch(self, media: MediaRef) -> bytes:
        """Download media bytes, capped at max_bytes."""
        url, auth = await self._resolve_url(media)
        data = bytearray()
        try:
            async with self.http_client.stream("GET", url, auth=auth, follow_redirects=True, timeout=15.0) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    if not chunk:
                        continue
                    data.extend(chunk)
                    if self.max_bytes and len(data) > self.max_bytes:
                        raise MediaError("media too large")
        except httpx.HTTPError as exc:
            raise MediaError(f"download failed: {exc}") from exc
        if not data:
            raise MediaError("downloaded media is empty")
        return bytes(data)

    async def transcribe(self, media: MediaRef) -> str:
        if self.transcriber is None:
            raise TranscriptionError("transcription is not configured")
        try:
            audio = await self.fetch(media)
        except MediaError as exc:
            raise TranscriptionError(str(exc)) from exc
        mime_type = media.mime_type or DEFAULT_AUDIO_MIME
        filename = f"audio{_guess_extension(mime_type, '.ogg')}"
        return await self.transcriber.transcribe_audio(audio_bytes=audio, filename=filename, mime_type=mime_type)

    async def describe(self, media: MediaRef) -> tuple[str, str]:
        """Return the prompt paired with the image and the image as a base64 data URL."""
        try:
            image = await self.fetch(media)
        except MediaError as exc:
            raise ImageProcessingError(str(exc)) from exc
        mime_type = media.mime_type or DEFAULT_IMAGE_MIME
        if not mime_type.startswith("image/"):
            raise ImageProcessingError(f"not an image: {mime_type}")
        encoded = base64.b64encode(image).decode("ascii")
        return self.image_prompt, f"data:{mime_type};base64,{encoded}"
