"""SQLAlchemy Models for DropDeck"""

from .base import Base
from .user import User
from .group import Group, GroupMember, AccessType, MemberRole
from .message import Message, MessageType
from .attachment import Attachment
from .export_artifact import ExportArtifact
from .sweep_run import SweepRun

__all__ = [
    "Base",
    "User",
    "Group",
    "GroupMember",
    "AccessType",
    "MemberRole",
    "Message",
    "MessageType",
    "Attachment",
    "ExportArtifact",
    "SweepRun",
]
