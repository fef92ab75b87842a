from app.services.llm.base import LLMProvider, LLMResponse, TranscriptionProvider
from app.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider", "TranscriptionProvider"]
