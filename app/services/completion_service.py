from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.logging_config import get_logger
from app.services import replies
from app.services.delivery_service import DeliveryRouter
from app.services.errors import DeliveryError, OracleError
from app.services.llm.base import LLMProvider
from app.services.state_machine import MessageStatus

logger = get_logger("completion_service")


@dataclass(frozen=True)
class CompletionResult:
    status: MessageStatus
    reply: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == MessageStatus.PROCESSED


class CompletionInvoker:
    """One oracle call per claimed batch, exactly one outbound reply.

    Failures are never retried here: a new inbound message or the periodic
    re-check is the only way a conversation gets another oracle call.
    """

    def __init__(self, oracle: LLMProvider, delivery: DeliveryRouter):
        self.oracle = oracle
        self.delivery = delivery

    async def invoke(self, conversation_id: str, system_instruction: str, content: list[dict]) -> CompletionResult:
        context = {"conversation_id": conversation_id, "content_parts": len(content)}
        try:
            response = await self.oracle.complete(system_instruction, content)
        except OracleError as exc:
            logger.error("Oracle call failed", extra={"context": {**context, "error": str(exc)}})
            await self.delivery.send_best_effort(conversation_id, replies.APOLOGY)
            return CompletionResult(status=MessageStatus.ERROR, error=str(exc), error_code="oracle_error")

        logger.info("Oracle reply generated", extra={"context": {**context, "model": response.model}})

        try:
            await self.delivery.send(conversation_id, response.content)
        except DeliveryError as exc:
            logger.error("Reply delivery failed", extra={"context": {**context, "error": str(exc)}})
            await self.delivery.send_best_effort(conversation_id, replies.DELIVERY_FALLBACK)
            return CompletionResult(
                status=MessageStatus.ERROR,
                reply=response.content,
                error=str(exc),
                error_code="delivery_error",
            )

        logger.info("Reply delivered", extra={"context": context})
        return CompletionResult(status=MessageStatus.PROCESSED, reply=response.content)
