from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import OracleError, TranscriptionError
from app.services.llm.base import LLMProvider, LLMResponse, TranscriptionProvider

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider, TranscriptionProvider):
    """OpenAI chat completions (vision capable) and speech-to-text."""

    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        default_model: str = "gpt-4o",
        transcription_model: str = "whisper-1",
        timeout_seconds: float = 60.0,
        transcription_timeout_seconds: float = 30.0,
        max_tokens: Optional[int] = None,
    ):
        self.api_key = api_key
        self.http_client = http_client
        self.default_model = default_model
        self.transcription_model = transcription_model
        self.timeout_seconds = timeout_seconds
        self.transcription_timeout_seconds = transcription_timeout_seconds
        self.max_tokens = max_tokens
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.audio_url = "https://api.openai.com/v1/audio/transcriptions"

    async def complete(
        self,
        system_instruction: str,
        content: List[dict],
        model: Optional[str] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_instruction},
                {"role": "user", "content": content},
            ],
        }
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        logger.debug(f"OpenAI request: model={model}, content_parts={len(content)}")

        try:
            response = await self.http_client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise OracleError(f"OpenAI timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise OracleError(f"OpenAI transport error: {exc}") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise OracleError(f"OpenAI API error: {response.status_code} - {response.text}", response.status_code)

        try:
            data = response.json()
            content_text = data["choices"][0]["message"].get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise OracleError(f"OpenAI malformed response: {exc}") from exc

        if not content_text.strip():
            raise OracleError("OpenAI returned an empty reply")

        return LLMResponse(
            content=content_text.strip(),
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    async def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
    ) -> str:
        if not audio_bytes:
            raise TranscriptionError("audio is empty")

        files = {"file": (filename or "audio.ogg", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": self.transcription_model, "response_format": "text"}

        try:
            response = await self.http_client.post(
                self.audio_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                files=files,
                data=data,
                timeout=self.transcription_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise TranscriptionError(f"OpenAI transcription transport error: {exc}") from exc

        logger.debug(f"OpenAI transcription status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI transcription error: {response.text}")
            raise TranscriptionError(f"OpenAI transcription error: {response.status_code} - {response.text}")

        transcript = (response.text or "").strip()
        if not transcript:
            raise TranscriptionError("OpenAI transcription returned empty text")
        return transcript
