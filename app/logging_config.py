"""JSON logging configuration for the chat relay."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

# Context keys lifted to the top level of the JSON record so log search can
# filter on them without digging into "context".
PROMOTED_KEYS = ("conversation_id", "claim_id")


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            for key in PROMOTED_KEYS:
                if context.get(key) is not None:
                    log_data[key] = str(context[key])
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure JSON logging for the application."""
    if level is None:
        from app.config import settings

        level = settings.log_level

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the relay namespace."""
    return logging.getLogger(f"relay.{name}")


class ConversationLogger(logging.LoggerAdapter):
    """Logger adapter that stamps every record with the conversation it concerns."""

    def __init__(self, logger: logging.Logger, conversation_id: str, **extra: Any):
        super().__init__(logger, {"conversation_id": conversation_id, **extra})

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs

    def bind(self, **extra: Any) -> "ConversationLogger":
        merged = {**self.extra, **extra}
        conversation_id = merged.pop("conversation_id")
        return ConversationLogger(self.logger, conversation_id, **merged)
