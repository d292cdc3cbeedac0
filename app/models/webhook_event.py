import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class WebhookEvent(Base):
    """Raw inbound payload kept for audit and replay."""

    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bot_id = Column(UUID(as_uuid=True))
    merchant_id = Column(UUID(as_uuid=True))
    raw_body = Column(Text, nullable=False)
    event_ids = Column(JSONB, nullable=False, default=list)
    event_count = Column(Integer, nullable=False, default=0)
    status = Column(Text, nullable=False, default="pending")  # pending, done, partial, failed
    outcome = Column(JSONB)
    last_error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    processed_at = Column(TIMESTAMP(timezone=True))
