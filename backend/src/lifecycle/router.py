"""FastAPI router for the ephemeral data lifecycle.

Provides admin/audit APIs for:
- Starting one sweep-once cycle and reading the last sweep report
- Downloading a fresh export of a live group
- Looking up the export artifact of a group
- Verifying an archive digest
- Listing export artifacts and sweep runs (stuck or FAILED groups)

Authentication is enforced by the surrounding API gateway.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from database import get_db
from domain.lifecycle.sweep_status import SweepStatus
from . import service
from .archive_builder import safe_archive_name
from .scheduler import ExpirySweepScheduler, SweepTrigger
from .schemas import (
    ExportArtifactListResponse,
    ExportArtifactResponse,
    SweepLaunchResponse,
    SweepReportResponse,
    SweepRunListResponse,
    SweepRunResponse,
    VerifyHashRequest,
    VerifyHashResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/lifecycle", tags=["Lifecycle"])


def get_scheduler(request: Request) -> ExpirySweepScheduler:
    """Scheduler created by the application lifespan."""
    scheduler = getattr(request.app.state, "lifecycle_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Lifecycle engine is not initialised"
        )
    return scheduler


@router.post(
    "/sweep",
    response_model=SweepLaunchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start one sweep-once cycle in the background"
)
def trigger_sweep(scheduler: ExpirySweepScheduler = Depends(get_scheduler)) -> SweepLaunchResponse:
    """Start sweep-once on the scheduler's runner thread and return at once.

    status is "skipped" when a sweep is already running; no second sweep
    is queued. The report is available from GET /sweep/last once the
    sweep has finished.
    """
    started = scheduler.launch(SweepTrigger.MANUAL)
    logger.info(
        "Manual sweep requested",
        extra={"status": "started" if started else "skipped"},
    )
    return SweepLaunchResponse(
        status="started" if started else "skipped",
        trigger=SweepTrigger.MANUAL,
    )


@router.get("/sweep/last", response_model=SweepReportResponse, summary="Report of the last finished sweep")
def last_sweep(scheduler: ExpirySweepScheduler = Depends(get_scheduler)) -> SweepReportResponse:
    report = scheduler.last_report
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No sweep has finished in this process yet"
        )
    return SweepReportResponse(**report.to_dict())


@router.post("/groups/{group_id}/export", summary="Download a fresh export of a live group")
def download_group_export(
    group_id: UUID,
    db: Session = Depends(get_db),
    scheduler: ExpirySweepScheduler = Depends(get_scheduler),
) -> FileResponse:
    """Build an archive of the group as it is now and stream it back.

    Nothing is recorded and no sweep state changes. The archive is
    securely erased after the response has been sent.
    """
    if not service.group_exists(db, group_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Group {group_id} not found"
        )

    deps = scheduler.deps
    result = service.build_group_export(db, deps.archive_builder, group_id)
    return FileResponse(
        result.path,
        media_type="application/zip",
        filename=f"{safe_archive_name(result.group_name)}_export.zip",
        background=BackgroundTask(service.discard_group_export, deps.eraser, result.path),
    )


@router.get(
    "/groups/{group_id}/export",
    response_model=ExportArtifactResponse,
    summary="Export artifact of a group"
)
def get_group_export(group_id: UUID, db: Session = Depends(get_db)) -> ExportArtifactResponse:
    """Raises 404 if the group was never exported (or its archive expired)."""
    artifact = service.get_export_artifact(db, group_id)
    if artifact is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No export artifact for group {group_id}"
        )
    return ExportArtifactResponse.model_validate(artifact)


@router.post(
    "/exports/{artifact_id}/verify",
    response_model=VerifyHashResponse,
    summary="Verify an archive digest"
)
def verify_export(
    artifact_id: UUID,
    body: VerifyHashRequest,
    db: Session = Depends(get_db),
) -> VerifyHashResponse:
    verification = service.verify_export_hash(db, artifact_id, body.sha256)
    if verification is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Export artifact {artifact_id} not found"
        )
    return VerifyHashResponse(
        artifact_id=verification.artifact_id,
        valid=verification.valid,
        matches_record=verification.matches_record,
        file_present=verification.file_present,
        matches_file=verification.matches_file,
    )


@router.get("/exports", response_model=ExportArtifactListResponse, summary="List export artifacts")
def list_exports(
    limit: int = Query(50, ge=1, le=200, description="Entries per page (max 200)"),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> ExportArtifactListResponse:
    artifacts = service.list_export_artifacts(db, limit=limit, offset=offset)
    return ExportArtifactListResponse(
        items=[ExportArtifactResponse.model_validate(a) for a in artifacts],
        limit=limit,
        offset=offset,
    )


@router.get("/sweep-runs", response_model=SweepRunListResponse, summary="List sweep runs")
def list_runs(
    status_filter: Optional[SweepStatus] = Query(
        None,
        alias="status",
        description="Filter by status, e.g. FAILED or ERASING",
    ),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> SweepRunListResponse:
    """Sweep runs ordered by last update, newest first.

    Example:
        GET /api/v1/lifecycle/sweep-runs?status=FAILED
    """
    runs = service.list_sweep_runs(db, status=status_filter, limit=limit, offset=offset)
    return SweepRunListResponse(
        items=[SweepRunResponse.model_validate(r) for r in runs],
        limit=limit,
        offset=offset,
    )
