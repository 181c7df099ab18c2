"""Pydantic schemas for the lifecycle admin API."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExportArtifactResponse(BaseModel):
    """Export artifact metadata (audit and download flows)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    group_id: UUID
    group_name: str
    file_path: str
    sha256: str
    size_bytes: int
    created_at: datetime


class ExportArtifactListResponse(BaseModel):
    items: List[ExportArtifactResponse]
    limit: int
    offset: int


class VerifyHashRequest(BaseModel):
    """Digest a recipient computed over the archive they received."""
    sha256: str = Field(..., description="Hex SHA-256 of the archive", examples=["9f86d081884c7d65..."])

    @field_validator("sha256")
    @classmethod
    def validate_hex(cls, v: str) -> str:
        v = v.strip().lower()
        if len(v) != 64 or any(c not in "0123456789abcdef" for c in v):
            raise ValueError("sha256 must be 64 hex characters")
        return v


class VerifyHashResponse(BaseModel):
    artifact_id: UUID
    valid: bool
    matches_record: bool
    file_present: bool
    matches_file: Optional[bool] = None


class SweepRunResponse(BaseModel):
    """Durable lifecycle state of one group."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    group_id: UUID
    status: str
    attempts: int
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    export_artifact_id: Optional[UUID] = None
    last_error: Optional[str] = None
    claimed_by: Optional[str] = None


class SweepRunListResponse(BaseModel):
    items: List[SweepRunResponse]
    limit: int
    offset: int


class PipelineOutcomeResponse(BaseModel):
    group_id: UUID
    result: str
    status: Optional[str] = None
    error: Optional[str] = None
    notifications_sent: int = 0
    notifications_failed: int = 0
    files_erased: int = 0
    artifact_id: Optional[UUID] = None


class SweepReportResponse(BaseModel):
    """Report of the last finished sweep-once cycle."""
    sweep_id: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool
    due_groups: int
    purged: int
    outcomes: List[PipelineOutcomeResponse]
    error: Optional[str] = None


class SweepLaunchResponse(BaseModel):
    """Answer to a manual sweep request; the sweep itself runs in the background."""
    status: str = Field(..., description="started, or skipped when a sweep is already running")
    trigger: str
