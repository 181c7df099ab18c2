"""Message SQLAlchemy model

Message content is stored only as a ciphertext blob produced by the
content cipher ("iv_hex:cipher_hex"). Plaintext never reaches the table.
"""

import enum
import uuid

from sqlalchemy import Column, Text, DateTime, ForeignKey, Uuid, Index
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class MessageType(str, enum.Enum):
    TEXT = "text"
    FILE = "file"
    POLL = "poll"
    REPLY = "reply"
    CODE = "code"


class Message(Base):
    """Chat message in an ephemeral group."""
    __tablename__ = "message"
    __table_args__ = (
        Index("ix_message_group_created", "group_id", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Uuid, ForeignKey("chat_group.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="RESTRICT"), nullable=False)
    content = Column(Text, nullable=True)  # ciphertext blob
    message_type = Column(Text, nullable=False, default=MessageType.TEXT.value)
    reply_to = Column(Uuid, ForeignKey("message.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    author = relationship("User")
    attachments = relationship("Attachment", back_populates="message")

    def __repr__(self):
        return f"<Message(id={self.id}, group_id={self.group_id}, type={self.message_type})>"
