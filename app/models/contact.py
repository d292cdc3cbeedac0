import uuid

from sqlalchemy import Column, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from app.database import Base


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("merchant_id", "line_user_id", name="uq_contacts_merchant_line_user"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(UUID(as_uuid=True), nullable=False)
    bot_id = Column(UUID(as_uuid=True))
    line_user_id = Column(Text, nullable=False)
    display_name = Column(Text)
    tags = Column(JSONB, nullable=False, default=list)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    last_active_at = Column(TIMESTAMP(timezone=True))

    messages = relationship("ConversationMessage", back_populates="contact")
