"""Ephemeral group and membership models.

A group carries a hard expiry_time. Once it passes, the expiry sweep
exports the group's content, erases its files and deletes these rows.
"""

import enum
import uuid

from sqlalchemy import Column, Text, DateTime, ForeignKey, Uuid, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class AccessType(str, enum.Enum):
    """How new members may join a group."""
    PUBLIC = "public"
    PRIVATE = "private"
    APPROVAL = "approval"


class MemberRole(str, enum.Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"


class Group(Base):
    """Time-boxed chat group.

    Attributes:
        id: Primary key UUID
        name: Display name (also used in export file and email subject)
        description: Optional free text
        creator_id: User who created the group
        access_type: public, private or approval
        expiry_time: Hard deadline after which content must be unrecoverable
        created_at: Creation timestamp
    """
    __tablename__ = "chat_group"
    __table_args__ = (
        Index("ix_chat_group_expiry_time", "expiry_time"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    creator_id = Column(Uuid, ForeignKey("user.id", ondelete="RESTRICT"), nullable=False)
    access_type = Column(Text, nullable=False, default=AccessType.PUBLIC.value)
    expiry_time = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    creator = relationship("User")
    members = relationship("GroupMember", back_populates="group")

    def __repr__(self):
        return f"<Group(id={self.id}, name={self.name}, expiry_time={self.expiry_time})>"


class GroupMember(Base):
    """Membership of a user in a group. Recipients of the export email."""
    __tablename__ = "group_member"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member_group_user"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Uuid, ForeignKey("chat_group.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    role = Column(Text, nullable=False, default=MemberRole.MEMBER.value)
    joined_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    group = relationship("Group", back_populates="members")
    user = relationship("User")
