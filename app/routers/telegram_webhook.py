import json
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.logging_config import get_logger
from app.runtime import get_scheduler
from app.schemas.relay import WebhookResponse
from app.schemas.telegram import TelegramUpdate
from app.services.dispatch_service import DispatchScheduler
from app.services.errors import InvalidPayload

logger = get_logger("telegram_webhook")

router = APIRouter()


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            decoded = raw.decode(enc, errors="replace")
            return json.loads(decoded)
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content=WebhookResponse(success=False, message=message).model_dump())


@router.post("/telegram-webhook", response_model=WebhookResponse)
async def handle_telegram_webhook(request: Request, scheduler: DispatchScheduler = Depends(get_scheduler)):
    """
    Handle Telegram webhook updates:
    - New messages -> stored and evaluated by the dispatch scheduler
    - Edited messages, callbacks and bot echoes -> acknowledged, nothing stored
    """
    body = await parse_telegram_update(request)
    if not isinstance(body, dict):
        return _bad_request("Invalid telegram payload")

    try:
        update = TelegramUpdate(**body)
    except ValidationError as e:
        logger.warning(f"Telegram update rejected: {e.error_count()} validation errors")
        return _bad_request("Invalid telegram payload")

    message = update.message
    if message is None or message.is_from_bot:
        return WebhookResponse(success=True, message="No actionable content")

    try:
        event = message.to_inbound_event()
    except InvalidPayload as e:
        logger.warning(f"Telegram message rejected: {e}")
        return _bad_request(str(e))

    result = await scheduler.on_inbound_message(event)
    return WebhookResponse(
        success=True,
        message="Stored" if result.stored else "Duplicate",
        conversation_id=event.conversation_id,
        outcome=result.outcome.value if result.outcome else None,
    )


# Path used by the serverless deployment
@router.post("/api/telegram", response_model=WebhookResponse)
async def handle_telegram_api(request: Request, scheduler: DispatchScheduler = Depends(get_scheduler)):
    return await handle_telegram_webhook(request, scheduler)
