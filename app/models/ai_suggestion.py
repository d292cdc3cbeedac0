import uuid

from sqlalchemy import Column, ForeignKey, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from app.database import Base


class AiSuggestion(Base):
    __tablename__ = "ai_suggestions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    merchant_id = Column(UUID(as_uuid=True), nullable=False)
    bot_id = Column(UUID(as_uuid=True))
    event_id = Column(Text)

    user_message = Column(Text, nullable=False)
    suggested_reply = Column(Text, nullable=False)
    sources_count = Column(Integer, default=0)
    sources = Column(JSONB, nullable=False, default=list)
    confidence_score = Column(Numeric(3, 2))
    risk_category = Column(Text)  # low, medium, high
    category = Column(Text)
    reason = Column(Text)

    status = Column(Text, default="draft")  # draft, needs_human, sent, dismissed, expired
    expires_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True))
