"""Admin endpoints: manual re-check, retention cleanup, conversation inspection."""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.runtime import get_scheduler
from app.schemas.relay import ConversationStatusResponse, RetentionResponse, SweepResponse
from app.services.dispatch_service import DispatchScheduler
from app.services.message_store import conversation_snapshot, evict_expired
from app.services.timeutil import utcnow

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/dispatch/process", response_model=SweepResponse)
async def process_dispatch(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    """Run one re-check pass now: stale claims, due conversations, retention."""
    _require_admin_token(x_admin_token)
    return SweepResponse(**await scheduler.sweep())


@router.post("/retention/cleanup", response_model=RetentionResponse)
def retention_cleanup(
    minutes: Optional[int] = None,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_token(x_admin_token)
    if minutes is not None and minutes < 0:
        raise HTTPException(status_code=400, detail="minutes must be >= 0")
    older_than = utcnow() - timedelta(minutes=settings.retention_minutes if minutes is None else minutes)
    evicted = evict_expired(db, older_than)
    return RetentionResponse(evicted=evicted, older_than=older_than.isoformat())


@router.get("/conversations/{conversation_id}", response_model=ConversationStatusResponse)
def get_conversation(
    conversation_id: str,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_token(x_admin_token)
    snapshot = conversation_snapshot(db, conversation_id)
    if not any(snapshot["counts"].values()):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return ConversationStatusResponse(**snapshot)
