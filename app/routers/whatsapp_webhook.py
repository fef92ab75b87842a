from fastapi import APIRouter, Depends, Request, Response
from pydantic import ValidationError

from app.logging_config import get_logger
from app.runtime import get_scheduler
from app.schemas.whatsapp import TwilioInboundMessage
from app.services.dispatch_service import DispatchScheduler
from app.services.errors import InvalidPayload
from app.services.timeutil import utcnow

logger = get_logger("whatsapp_webhook")

router = APIRouter()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def twiml(status_code: int = 200) -> Response:
    return Response(content=EMPTY_TWIML, media_type="text/xml", status_code=status_code)


@router.post("/whatsapp")
async def handle_whatsapp_webhook(request: Request, scheduler: DispatchScheduler = Depends(get_scheduler)):
    """Twilio WhatsApp webhook. Replies go out through the REST API, never in the TwiML body."""
    received_at = utcnow()
    form = await request.form()

    try:
        inbound = TwilioInboundMessage.model_validate(dict(form))
        event = inbound.to_inbound_event(received_at)
    except (ValidationError, InvalidPayload) as e:
        logger.warning(f"WhatsApp message rejected: {e}")
        return twiml(status_code=400)

    result = await scheduler.on_inbound_message(event)
    logger.info(
        "WhatsApp message handled",
        extra={
            "context": {
                "conversation_id": event.conversation_id,
                "stored": result.stored,
                "outcome": result.outcome.value if result.outcome else None,
            }
        },
    )
    return twiml()
