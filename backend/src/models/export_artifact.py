"""Export artifact model - the durable export of an expired group.

One row is written per group, in the same transaction that moves the
group's sweep run past EXPORTING. The row is immutable afterwards and has
no foreign key to chat_group because it must outlive the purged group.
"""

import uuid

from sqlalchemy import Column, Text, BigInteger, DateTime, Uuid, Index

from .base import Base, utcnow


class ExportArtifact(Base):
    """Archive produced for an expired group.

    Attributes:
        id: Primary key UUID
        group_id: Group the archive was built from (unique)
        group_name: Group name at export time
        file_path: Location of the zip archive on disk
        sha256: Hex digest of the archive bytes on disk
        size_bytes: Archive size in bytes
        created_at: When the artifact was recorded
    """

    __tablename__ = "export_artifact"
    __table_args__ = (
        Index("ix_export_artifact_group_id", "group_id", unique=True),
        Index("ix_export_artifact_created_at", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Uuid, nullable=False)
    group_name = Column(Text, nullable=False)
    file_path = Column(Text, nullable=False)
    sha256 = Column(Text, nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        """Convert artifact to dictionary representation"""
        return {
            "id": str(self.id),
            "group_id": str(self.group_id),
            "group_name": self.group_name,
            "file_path": self.file_path,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ExportArtifact(id={self.id}, group_id={self.group_id}, sha256={self.sha256[:12]})>"
