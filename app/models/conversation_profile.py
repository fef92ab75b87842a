from sqlalchemy import Column, DateTime, Text
from sqlalchemy.sql import func

from app.database import Base


class ConversationProfile(Base):
    __tablename__ = "conversation_profiles"

    conversation_id = Column(Text, primary_key=True)
    persona = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
