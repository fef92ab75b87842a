"""Process-wide resources.

Built once on application startup and closed on shutdown: the shared httpx
connection pool, the platform clients and the dispatch scheduler. Request
handlers reach them through ``get_scheduler``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import httpx
from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from app.config import Settings
from app.database import SessionLocal
from app.logging_config import get_logger
from app.services.completion_service import CompletionInvoker
from app.services.context_assembler import ContextAssembler
from app.services.delivery_service import DeliveryRouter
from app.services.dispatch_service import DispatchScheduler
from app.services.llm import OpenAIProvider
from app.services.media_service import MediaService
from app.services.telegram_service import TelegramService
from app.services.twilio_service import TwilioService
from app.services.window_policy import WindowPolicy

logger = get_logger("runtime")


@dataclass
class Runtime:
    http_client: httpx.AsyncClient
    scheduler: DispatchScheduler
    telegram: Optional[TelegramService] = None
    twilio: Optional[TwilioService] = None


def build_runtime(
    settings: Settings,
    session_factory: Callable[[], Session] = SessionLocal,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Runtime:
    http_client = http_client or httpx.AsyncClient(
        timeout=30.0,
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
    )

    telegram = TelegramService(settings.telegram_bot_token, http_client) if settings.telegram_bot_token else None
    twilio = None
    if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_phone_number:
        twilio = TwilioService(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_phone_number,
            http_client,
        )
    if telegram is None and twilio is None:
        logger.warning("No outbound platform configured; replies cannot be delivered")
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; every oracle call will fail")

    provider = OpenAIProvider(
        api_key=settings.openai_api_key or "",
        http_client=http_client,
        default_model=settings.openai_model,
        transcription_model=settings.openai_transcription_model,
        timeout_seconds=settings.oracle_timeout_seconds,
        transcription_timeout_seconds=settings.transcription_timeout_seconds,
    )
    media = MediaService(
        http_client,
        transcriber=provider,
        telegram=telegram,
        twilio=twilio,
        max_bytes=settings.media_max_bytes,
        image_prompt=settings.image_prompt,
    )
    delivery = DeliveryRouter(telegram=telegram, twilio=twilio)

    scheduler = DispatchScheduler(
        session_factory,
        ContextAssembler(media),
        CompletionInvoker(provider, delivery),
        delivery,
        WindowPolicy.from_seconds(settings.quiet_period_seconds, settings.min_response_delay_seconds),
        history_window=timedelta(minutes=settings.history_window_minutes),
        history_limit=settings.history_limit,
        retention=timedelta(minutes=settings.retention_minutes),
        stale_after=timedelta(seconds=settings.stale_processing_seconds),
        default_persona=settings.default_persona,
    )
    return Runtime(http_client=http_client, scheduler=scheduler, telegram=telegram, twilio=twilio)


async def close_runtime(runtime: Runtime) -> None:
    await runtime.scheduler.shutdown()
    await runtime.http_client.aclose()


def get_scheduler(request: Request) -> DispatchScheduler:
    runtime: Optional[Runtime] = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Relay is starting up")
    return runtime.scheduler
