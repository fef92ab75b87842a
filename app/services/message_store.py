"""Conversation store queries.

The store owns every message record. Status and ``wait_until`` are only
written through the functions below, and every status change is a single
guarded UPDATE so concurrent request handlers coordinate through the database
rather than through process memory.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from app.logging_config import get_logger
from app.models import InboundMessage
from app.services.errors import StoreError
from app.services.payload import InboundEvent, payload_to_json
from app.services.state_machine import (
    TERMINAL_STATUSES,
    ConversationPhase,
    MessageStatus,
    derive_phase,
    transition,
)
from app.services.timeutil import ensure_utc, utcnow

logger = get_logger("message_store")

PENDING = MessageStatus.PENDING.value
PROCESSING = MessageStatus.PROCESSING.value
PROCESSED = MessageStatus.PROCESSED.value
ERROR = MessageStatus.ERROR.value


@dataclass(frozen=True)
class Claim:
    claim_id: uuid.UUID
    conversation_id: str
    count: int
    claimed_at: datetime


def sequence_sort_key(sequence_id: str) -> tuple:
    """Numeric ids (Telegram) order numerically, opaque ids (Twilio SIDs) lexically."""
    value = (sequence_id or "").strip()
    if value.isdigit():
        return (0, int(value), "")
    return (1, 0, value)


def chronological_key(message: InboundMessage) -> tuple:
    return (ensure_utc(message.received_at), sequence_sort_key(message.sequence_id))


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise StoreError(f"unsupported store dialect: {dialect}")


def append_message(db: Session, event: InboundEvent) -> bool:
    """Store an inbound event as pending. Returns False for a re-delivered event."""
    now = utcnow()
    insert = _insert_for(db)
    stmt = (
        insert(InboundMessage)
        .values(
            id=uuid.uuid4(),
            conversation_id=event.conversation_id,
            sequence_id=event.sequence_id,
            kind=event.kind.value,
            payload_json=payload_to_json(event.payload),
            status=PENDING,
            received_at=event.received_at,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["conversation_id", "sequence_id"])
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"append failed: {exc}") from exc
    return result.rowcount > 0


def get_pending(db: Session, conversation_id: str) -> list[InboundMessage]:
    return (
        db.query(InboundMessage)
        .filter(InboundMessage.conversation_id == conversation_id, InboundMessage.status == PENDING)
        .order_by(InboundMessage.received_at.asc())
        .all()
    )


def defer_pending(db: Session, conversation_id: str, wait_until: datetime) -> int:
    """Push every pending message of the conversation back to ``wait_until``."""
    try:
        result = db.execute(
            update(InboundMessage)
            .where(InboundMessage.conversation_id == conversation_id, InboundMessage.status == PENDING)
            .values(wait_until=wait_until, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"defer failed: {exc}") from exc
    return result.rowcount


def claim_batch(
    db: Session,
    conversation_id: str,
    now: Optional[datetime] = None,
    *,
    respect_wait: bool = True,
) -> Optional[Claim]:
    """Atomically move eligible pending messages to processing.

    One conditional UPDATE: only pending rows whose wait has elapsed, and only
    while no other batch of the same conversation is processing. Exactly one of
    several concurrent callers sees a non-zero row count; the others get None.
    ``respect_wait=False`` lets the forced re-check take rows still held back by
    the minimum response delay; the in-flight guard always applies.
    """
    now = now or utcnow()
    claim_id = uuid.uuid4()
    in_flight = aliased(InboundMessage)
    conditions = [
        InboundMessage.conversation_id == conversation_id,
        InboundMessage.status == PENDING,
        ~exists().where(in_flight.conversation_id == conversation_id, in_flight.status == PROCESSING),
    ]
    if respect_wait:
        conditions.append((InboundMessage.wait_until.is_(None)) | (InboundMessage.wait_until <= now))
    stmt = (
        update(InboundMessage)
        .where(*conditions)
        .values(
            status=transition(MessageStatus.PENDING, MessageStatus.PROCESSING).value,
            claim_id=claim_id,
            claimed_at=now,
            wait_until=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"claim failed: {exc}") from exc

    if result.rowcount <= 0:
        return None
    return Claim(claim_id=claim_id, conversation_id=conversation_id, count=result.rowcount, claimed_at=now)


def get_claimed(db: Session, claim_id: uuid.UUID) -> list[InboundMessage]:
    rows = db.query(InboundMessage).filter(InboundMessage.claim_id == claim_id).all()
    return sorted(rows, key=chronological_key)


def get_history(
    db: Session,
    conversation_id: str,
    since: datetime,
    limit: int,
) -> list[InboundMessage]:
    """Most recent processed messages inside the horizon, oldest first."""
    if limit <= 0:
        return []
    rows = (
        db.query(InboundMessage)
        .filter(
            InboundMessage.conversation_id == conversation_id,
            InboundMessage.status == PROCESSED,
            InboundMessage.received_at >= since,
        )
        .order_by(InboundMessage.received_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def record_resolved_text(db: Session, message_id: uuid.UUID, text: str) -> None:
    db.execute(
        update(InboundMessage)
        .where(InboundMessage.id == message_id)
        .values(resolved_text=text, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_claim(
    db: Session,
    claim_id: uuid.UUID,
    status: MessageStatus,
    last_error: Optional[str] = None,
) -> int:
    """Close a claim as processed or error. Terminal rows are never touched again."""
    target = transition(MessageStatus.PROCESSING, status)
    now = utcnow()
    try:
        result = db.execute(
            update(InboundMessage)
            .where(InboundMessage.claim_id == claim_id, InboundMessage.status == PROCESSING)
            .values(
                status=target.value,
                processed_at=now,
                last_error=last_error[:500] if last_error else None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"mark claim failed: {exc}") from exc
    return result.rowcount


def conversations_due(db: Session, now: Optional[datetime] = None) -> list[str]:
    """Conversations holding pending messages whose wait has elapsed."""
    now = now or utcnow()
    rows = db.execute(
        select(InboundMessage.conversation_id)
        .where(
            InboundMessage.status == PENDING,
            (InboundMessage.wait_until.is_(None)) | (InboundMessage.wait_until <= now),
        )
        .distinct()
    ).all()
    return sorted(row[0] for row in rows)


def release_stale_claims(db: Session, stale_before: datetime) -> list[str]:
    """Fail claims whose worker vanished; returns the affected conversations."""
    conversation_ids = [
        row[0]
        for row in db.execute(
            select(InboundMessage.conversation_id)
            .where(InboundMessage.status == PROCESSING, InboundMessage.claimed_at < stale_before)
            .distinct()
        ).all()
    ]
    if not conversation_ids:
        return []

    now = utcnow()
    db.execute(
        update(InboundMessage)
        .where(InboundMessage.status == PROCESSING, InboundMessage.claimed_at < stale_before)
        .values(status=ERROR, last_error="stale_claim", processed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.warning(
        "Released stale claims",
        extra={"context": {"conversation_ids": conversation_ids, "stale_before": stale_before.isoformat()}},
    )
    return sorted(conversation_ids)


def evict_expired(db: Session, older_than: datetime) -> int:
    result = db.execute(
        delete(InboundMessage)
        .where(
            InboundMessage.status.in_([status.value for status in TERMINAL_STATUSES]),
            InboundMessage.received_at < older_than,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def clear_history(db: Session, conversation_id: str) -> int:
    result = db.execute(
        delete(InboundMessage)
        .where(
            InboundMessage.conversation_id == conversation_id,
            InboundMessage.status.in_([status.value for status in TERMINAL_STATUSES]),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def conversation_snapshot(db: Session, conversation_id: str) -> dict[str, Any]:
    rows = db.execute(
        select(InboundMessage.status, func.count())
        .where(InboundMessage.conversation_id == conversation_id)
        .group_by(InboundMessage.status)
    ).all()
    counts = {status.value: 0 for status in MessageStatus}
    for status, count in rows:
        counts[status] = count
    statuses = [status for status, count in counts.items() if count]
    next_wait = db.execute(
        select(func.max(InboundMessage.wait_until)).where(
            InboundMessage.conversation_id == conversation_id, InboundMessage.status == PENDING
        )
    ).scalar()
    phase: ConversationPhase = derive_phase(statuses)
    return {
        "conversation_id": conversation_id,
        "phase": phase.value,
        "counts": counts,
        "wait_until": ensure_utc(next_wait).isoformat() if next_wait else None,
    }
