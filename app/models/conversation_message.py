import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from app.database import Base


class ConversationMessage(Base):
    """Append-only conversation log; status changes are new rows."""

    __tablename__ = "conversations"
    __table_args__ = (Index("ix_conversations_contact_event", "contact_id", "event_id", "role"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    role = Column(Text, nullable=False)  # user, assistant
    message = Column(Text, nullable=False)
    status = Column(Text)  # ai_handled, needs_human, resolved, closed
    resolved_by = Column(Text)  # ai, human, unresolved
    is_resolved = Column(Boolean)
    confidence_score = Column(Numeric(3, 2))
    event_id = Column(Text)
    ab_test_id = Column(UUID(as_uuid=True))
    ab_variant = Column(Text)
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    contact = relationship("Contact", back_populates="messages")
