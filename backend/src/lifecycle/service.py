"""Lifecycle service - wiring and audit operations.

- build_dependencies / build_orchestrator / build_scheduler: the
  composition root turning settings into the explicit dependency bundle
- get_export_artifact, list_export_artifacts, verify_export_hash and
  list_sweep_runs: audit queries for operators and download flows
- build_group_export / discard_group_export: manual export of a live
  group (no sweep state), erased again once served
- purge_old_exports: securely erases archives of purged groups once
  they are older than the export retention period
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from config import Settings
from domain.lifecycle.errors import SecureDeleteError
from domain.lifecycle.ports import Clock, NotifierPort, SystemClock
from domain.lifecycle.sweep_status import SweepStatus
from infrastructure.encryption.content_cipher import build_cipher
from infrastructure.notifications.smtp_notifier import SmtpNotifier
from infrastructure.storage.secure_eraser import SecureEraser
from models.export_artifact import ExportArtifact
from models.group import Group
from models.sweep_run import SweepRun
from .archive_builder import ArchiveBuilder, ArchiveResult, file_sha256
from .events import LifecycleEvents, lifecycle_events
from .orchestrator import LifecycleDependencies, SweepOrchestrator
from .retry import DatabaseRetry
from .scheduler import ExpirySweepScheduler

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------

def build_dependencies(
    settings: Settings,
    session_factory: Optional[Callable[[], Session]] = None,
    notifier: Optional[NotifierPort] = None,
    clock: Optional[Clock] = None,
    events: Optional[LifecycleEvents] = None,
) -> LifecycleDependencies:
    """Build the lifecycle dependency bundle from settings.

    Raises:
        ConfigError: If the content encryption key is missing or too short
    """
    cipher = build_cipher(settings.CONTENT_ENCRYPTION_KEY, settings.CONTENT_ENCRYPTION_ALGORITHM)
    clock = clock or SystemClock()
    eraser = SecureEraser(passes=settings.SECURE_DELETE_PASSES)

    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    return LifecycleDependencies(
        session_factory=session_factory,
        cipher=cipher,
        archive_builder=ArchiveBuilder(cipher, settings.EXPORT_PATH, clock=clock, eraser=eraser),
        eraser=eraser,
        notifier=notifier or SmtpNotifier.from_settings(settings),
        clock=clock,
        events=events or lifecycle_events,
        max_attempts=settings.SWEEP_MAX_ATTEMPTS,
        claim_ttl_seconds=settings.SWEEP_CLAIM_TTL_SECONDS,
        db_retry=DatabaseRetry(attempts=settings.DB_RETRY_ATTEMPTS),
    )


def build_orchestrator(settings: Settings, **overrides) -> SweepOrchestrator:
    return SweepOrchestrator(build_dependencies(settings, **overrides))


def build_scheduler(settings: Settings, **overrides) -> ExpirySweepScheduler:
    """Scheduler wired from settings; overrides go to build_dependencies."""
    return ExpirySweepScheduler(
        build_orchestrator(settings, **overrides),
        max_workers=settings.SWEEP_MAX_WORKERS,
        interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
        safety_net_hour_utc=settings.SAFETY_NET_HOUR_UTC,
    )


# ----------------------------------------------------------------------
# Audit queries
# ----------------------------------------------------------------------

def get_export_artifact(db: Session, group_id: UUID) -> Optional[ExportArtifact]:
    """Export artifact metadata for a group, or None if it was never exported."""
    return db.query(ExportArtifact).filter(ExportArtifact.group_id == group_id).one_or_none()


def list_export_artifacts(db: Session, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[ExportArtifact]:
    """Export artifacts, newest first."""
    return (
        db.query(ExportArtifact)
        .order_by(ExportArtifact.created_at.desc(), ExportArtifact.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )


@dataclass
class HashVerification:
    """Result of checking a digest against an export artifact.

    Attributes:
        artifact_id: Artifact checked
        matches_record: Supplied digest equals the recorded digest
        file_present: Archive still exists on disk
        matches_file: Archive on disk still hashes to the recorded digest
            (None when the file is gone)
    """
    artifact_id: UUID
    matches_record: bool
    file_present: bool
    matches_file: Optional[bool] = None

    @property
    def valid(self) -> bool:
        return self.matches_record and self.matches_file is not False


def verify_export_hash(db: Session, artifact_id: UUID, digest: str) -> Optional[HashVerification]:
    """Check a recipient-supplied SHA-256 digest against an artifact.

    Returns:
        HashVerification, or None if the artifact does not exist
    """
    artifact = db.get(ExportArtifact, artifact_id)
    if artifact is None:
        return None

    verification = HashVerification(
        artifact_id=artifact.id,
        matches_record=digest.strip().lower() == artifact.sha256,
        file_present=os.path.isfile(artifact.file_path),
    )
    if verification.file_present:
        verification.matches_file = file_sha256(artifact.file_path) == artifact.sha256
    return verification


def list_sweep_runs(
    db: Session,
    status: Optional[SweepStatus] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> List[SweepRun]:
    """Sweep runs, optionally filtered by status (e.g. FAILED or stuck ERASING)."""
    query = db.query(SweepRun)
    if status is not None:
        query = query.filter(SweepRun.status == status.value)
    return query.order_by(SweepRun.updated_at.desc(), SweepRun.id.asc()).offset(offset).limit(limit).all()


# ----------------------------------------------------------------------
# Manual export
# ----------------------------------------------------------------------

def group_exists(db: Session, group_id: UUID) -> bool:
    return db.query(Group.id).filter(Group.id == group_id).first() is not None


def build_group_export(db: Session, builder: ArchiveBuilder, group_id: UUID) -> ArchiveResult:
    """Build an export archive for a live group on demand.

    Does not record an ExportArtifact and does not touch the sweep run, so
    it can never unlock erasure. The file name carries a timestamp tag so
    it never collides with the sweep archive of the same group. The caller
    owns the file and must hand it to discard_group_export when done.

    Raises:
        ArchiveError: If the group does not exist or cannot be exported
    """
    tag = f"manual_{int(builder.clock.now().timestamp() * 1000)}"
    result = builder.build(db, group_id, tag=tag)
    logger.info(
        f"Manual export built for group {group_id}",
        extra={"group_id": str(group_id), "path": result.path},
    )
    return result


def discard_group_export(eraser: SecureEraser, path: str) -> None:
    """Securely erase a manual export once it has been served."""
    try:
        eraser.erase(path)
    except SecureDeleteError:
        logger.error(f"Failed to erase manual export {path}", extra={"path": path}, exc_info=True)


# ----------------------------------------------------------------------
# Export retention
# ----------------------------------------------------------------------

@dataclass
class ExportPurgeStatistics:
    """Outcome of one purge_old_exports run."""
    cutoff: datetime
    artifacts_deleted: int = 0
    files_erased: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "cutoff": self.cutoff.isoformat(),
            "artifacts_deleted": self.artifacts_deleted,
            "files_erased": self.files_erased,
            "errors": list(self.errors),
        }


def purge_old_exports(
    db: Session,
    eraser: SecureEraser,
    days: int,
    clock: Optional[Clock] = None,
) -> ExportPurgeStatistics:
    """Erase archives of purged groups older than `days` and delete their rows.

    Artifacts of groups that are not PURGED are kept whatever their age:
    they are the only proof that export preceded erasure. A file that
    cannot be erased keeps its row so the next run retries it.
    """
    now = (clock or SystemClock()).now()
    stats = ExportPurgeStatistics(cutoff=now - timedelta(days=days))

    expired = (
        db.query(ExportArtifact)
        .join(SweepRun, SweepRun.group_id == ExportArtifact.group_id)
        .filter(
            SweepRun.status == SweepStatus.PURGED.value,
            ExportArtifact.created_at < stats.cutoff,
        )
        .order_by(ExportArtifact.created_at.asc())
        .all()
    )

    for artifact in expired:
        try:
            existed = os.path.lexists(artifact.file_path)
            eraser.erase(artifact.file_path)
        except SecureDeleteError as e:
            stats.errors.append(str(e))
            logger.error(
                f"Could not erase export archive {artifact.file_path}",
                extra={"artifact_id": str(artifact.id), "path": artifact.file_path},
                exc_info=True,
            )
            continue

        if existed:
            stats.files_erased += 1
        db.query(SweepRun).filter(SweepRun.export_artifact_id == artifact.id).update(
            {SweepRun.export_artifact_id: None}, synchronize_session=False
        )
        db.delete(artifact)
        db.commit()
        stats.artifacts_deleted += 1

    logger.info(
        f"Export retention: {stats.artifacts_deleted} artifact(s) older than {days} days removed",
        extra={"status": "completed" if not stats.errors else "partial"},
    )
    return stats
