"""User SQLAlchemy model"""

import uuid

from sqlalchemy import Column, Text, DateTime, Uuid, Index

from .base import Base, utcnow


class User(Base):
    """Account that can author messages and belong to groups.

    Only the fields the lifecycle engine reads are modelled here: the
    display name (transcript sender) and email (export recipient).
    Users outlive the groups they belong to.
    """
    __tablename__ = "user"
    __table_args__ = (
        Index("ix_user_email", "email", unique=True),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    email = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"
