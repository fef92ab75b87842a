from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    conversation_id: Optional[str] = None
    outcome: Optional[str] = None


class SweepResponse(BaseModel):
    released_stale: int = 0
    due: int = 0
    evicted: int = 0
    processed: int = 0
    short_circuited: int = 0
    deferred: int = 0
    not_claimed: int = 0
    idle: int = 0
    error: int = 0
    store_error: int = 0


class RetentionResponse(BaseModel):
    evicted: int
    older_than: str


class ConversationStatusResponse(BaseModel):
    conversation_id: str
    phase: str
    counts: dict[str, int]
    wait_until: Optional[str] = None
