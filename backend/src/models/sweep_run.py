"""Sweep run model - durable per-group lifecycle state.

status follows domain.lifecycle.sweep_status. claimed_by/claimed_at form
the advisory claim that keeps two ticks or two processes from running the
same group's pipeline at once.
"""

import uuid

from sqlalchemy import Column, String, Text, Integer, DateTime, Uuid, Index

from domain.lifecycle.sweep_status import SweepStatus
from .base import Base, PortableJSONB, utcnow


class SweepRun(Base):
    """Lifecycle state of one expired group.

    Attributes:
        id: Primary key UUID
        group_id: Group being swept (unique, survives the purge)
        status: PENDING, EXPORTING, NOTIFYING, ERASING, PURGED or FAILED
        attempts: Number of failed pipeline attempts
        started_at: First time the sweep picked the group up
        updated_at: Last status change
        completed_at: When the group reached PURGED
        notified_at: When the notification stage finished
        export_artifact_id: Artifact written by the export stage
        last_error: Message of the most recent failure
        error_json: Structured details of the most recent failure
        claimed_by: Token of the worker currently running the pipeline
        claimed_at: When the claim was taken
    """

    __tablename__ = "sweep_run"
    __table_args__ = (
        Index("ix_sweep_run_group_id", "group_id", unique=True),
        Index("ix_sweep_run_status", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Uuid, nullable=False)
    status = Column(String(20), nullable=False, default=SweepStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    notified_at = Column(DateTime(timezone=True), nullable=True)
    export_artifact_id = Column(Uuid, nullable=True)
    last_error = Column(Text, nullable=True)
    error_json = Column(PortableJSONB, nullable=True)
    claimed_by = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def sweep_status(self) -> SweepStatus:
        return SweepStatus(self.status)

    def to_dict(self):
        """Convert sweep run to dictionary representation"""
        return {
            "id": str(self.id),
            "group_id": str(self.group_id),
            "status": self.status,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notified_at": self.notified_at.isoformat() if self.notified_at else None,
            "export_artifact_id": str(self.export_artifact_id) if self.export_artifact_id else None,
            "last_error": self.last_error,
            "claimed": self.claimed_by is not None,
        }

    def __repr__(self):
        return f"<SweepRun(group_id={self.group_id}, status={self.status}, attempts={self.attempts})>"
