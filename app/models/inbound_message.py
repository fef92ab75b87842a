import uuid

from sqlalchemy import JSON, Column, DateTime, Index, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from app.database import Base


class InboundMessage(Base):
    __tablename__ = "inbound_messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence_id", name="uq_inbound_messages_conversation_sequence"),
        Index("ix_inbound_messages_conversation_status", "conversation_id", "status"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Text, nullable=False)  # telegram:<chat_id>, whatsapp:<e164>
    sequence_id = Column(Text, nullable=False)
    kind = Column(Text, nullable=False)  # text, voice, photo, video, other
    payload_json = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    status = Column(Text, nullable=False, default="pending")  # pending, processing, processed, error
    received_at = Column(DateTime(timezone=True), nullable=False)
    wait_until = Column(DateTime(timezone=True))
    claim_id = Column(Uuid(as_uuid=True))
    claimed_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))
    resolved_text = Column(Text)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
