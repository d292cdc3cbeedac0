from sqlalchemy import Boolean, Column, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from app.database import Base


class MerchantSettings(Base):
    __tablename__ = "merchant_settings"

    merchant_id = Column(UUID(as_uuid=True), primary_key=True)
    system_prompt = Column(Text)
    ai_model = Column(Text)
    confidence_threshold = Column(Numeric(3, 2), default=0.6)
    business_hours = Column(JSONB)  # {"timezone": ..., "schedule": {"mon": {...}}}
    sensitive_words = Column(JSONB, nullable=False, default=list)
    quick_replies = Column(JSONB, nullable=False, default=list)  # [{"label", "text"}]
    conversation_memory_count = Column(Integer, default=5)
    max_reply_length = Column(Integer, default=500)
    welcome_message_enabled = Column(Boolean, default=False)
    welcome_message = Column(Text)
    off_hours_message = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True))
