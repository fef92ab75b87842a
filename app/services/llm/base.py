from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Completion oracle: one system instruction plus a sequence of content parts in, one reply out."""

    @abstractmethod
    async def complete(
        self,
        system_instruction: str,
        content: List[dict],
        model: Optional[str] = None,
    ) -> LLMResponse:
        """Generate a reply. Raises OracleError on any failure."""


class TranscriptionProvider(ABC):
    @abstractmethod
    async def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
    ) -> str:
        """Speech to text. Raises TranscriptionError on any failure."""
