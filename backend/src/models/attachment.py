"""Attachment SQLAlchemy model

file_path holds the ciphertext of the on-disk storage path. erased_at is
the per-file secure erase marker: once set, the expiry sweep never
overwrites that file again, so an interrupted erase stage resumes at the
first attachment still lacking the marker.
"""

import uuid

from sqlalchemy import Column, Text, BigInteger, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class Attachment(Base):
    """File uploaded with a message."""
    __tablename__ = "attachment"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id = Column(Uuid, ForeignKey("message.id", ondelete="CASCADE"), nullable=False, index=True)
    file_path = Column(Text, nullable=False)  # ciphertext blob of the storage path
    file_name = Column(Text, nullable=False)  # original filename
    file_size = Column(BigInteger, nullable=False)
    file_type = Column(Text, nullable=False)  # MIME type
    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    erased_at = Column(DateTime(timezone=True), nullable=True)

    message = relationship("Message", back_populates="attachments")

    def __repr__(self):
        return f"<Attachment(id={self.id}, file_name={self.file_name}, erased={self.erased_at is not None})>"
