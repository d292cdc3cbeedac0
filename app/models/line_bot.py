import uuid

from sqlalchemy import Boolean, Column, Integer, LargeBinary, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from app.database import Base


class LineBot(Base):
    __tablename__ = "line_bots"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(UUID(as_uuid=True), nullable=False)
    name = Column(Text)
    webhook_key_hash = Column(Text, nullable=False)  # sha256 hex of the path key
    encrypted_channel_secret = Column(LargeBinary, nullable=False)
    encrypted_channel_access_token = Column(LargeBinary, nullable=False)
    encryption_version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))
