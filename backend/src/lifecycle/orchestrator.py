"""Sweep orchestrator - moves one expired group to full deletion.

Pipeline per group (each stage commits its own durable checkpoint):

    claim -> EXPORTING -> NOTIFYING -> ERASING -> PURGED

- Claim: atomic UPDATE on sweep_run.claimed_by. A second tick or a second
  process that loses the race skips the group. Claims older than the claim
  TTL are treated as abandoned by a crashed worker and can be taken over.
- Export: ArchiveBuilder output is recorded as an ExportArtifact in the
  same transaction that moves the run to NOTIFYING. On failure the run
  goes back to PENDING and nothing is erased.
- Notify: best-effort, one send per member. Failures are logged only.
- Erase: the artifact hash is re-verified against the archive on disk,
  then attachment files are erased one by one, each marked erased_at in
  its own commit. A SecureDeleteError stops the stage; the next attempt
  resumes at the first unmarked file.
- Purge: attachment, message, membership and group rows are deleted in
  one transaction; the run becomes PURGED only if none remain.

A failed attempt increments sweep_run.attempts. Once attempts reach the
retry budget the run is marked FAILED, which the next tick resumes from
its last checkpoint (see domain.lifecycle.sweep_status.resume_status).
"""

import logging
import os
import socket
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from domain.lifecycle.errors import (
    ArchiveError,
    CryptoError,
    LifecycleError,
    SecureDeleteError,
    StateTransitionError,
    TransientIOError,
)
from domain.lifecycle.ports import Clock, NotifierPort, SystemClock
from domain.lifecycle.sweep_status import (
    POST_EXPORT_STATES,
    TERMINAL_STATES,
    SweepStatus,
    resume_status,
    validate_transition,
)
from infrastructure.encryption.content_cipher import ContentCipher
from infrastructure.notifications.smtp_notifier import build_export_email
from infrastructure.storage.secure_eraser import SecureEraser
from models.attachment import Attachment
from models.export_artifact import ExportArtifact
from models.group import Group, GroupMember
from models.message import Message
from models.sweep_run import SweepRun
from models.user import User
from observability.metrics import (
    export_archive_bytes,
    files_erased_total,
    group_pipelines_total,
    groups_in_sweep,
    notifications_total,
)
from .archive_builder import (
    ArchiveBuilder,
    ArchiveResult,
    file_sha256,
    safe_archive_name,
    stale_archives,
)
from .events import LifecycleEvents
from .retry import DatabaseRetry

logger = logging.getLogger(__name__)


class PipelineResult:
    """Result labels of one run_group call (also the metric label values)."""
    PURGED = "purged"
    SKIPPED = "skipped"            # not claimed, already purged or shutting down
    EXPORT_FAILED = "export_failed"
    ERASE_BLOCKED = "erase_blocked"
    FAILED = "failed"              # retry budget exhausted, run marked FAILED
    ERROR = "error"                # other stage failure, retried next tick


@dataclass
class LifecycleDependencies:
    """Explicit collaborators of the orchestrator and scheduler.

    Attributes:
        session_factory: Callable returning a new SQLAlchemy session
        cipher: Content cipher for message content and attachment paths
        archive_builder: Builds the export archive
        eraser: Secure eraser for attachment files
        notifier: Export notification transport
        clock: Time source for expiry, claims and timestamps
        events: Listener registry for group_purged
        max_attempts: Failed attempts before a run is marked FAILED
        claim_ttl_seconds: Age after which a claim counts as abandoned
        db_retry: Retry policy for database units of work
    """
    session_factory: Callable[[], Session]
    cipher: ContentCipher
    archive_builder: ArchiveBuilder
    eraser: SecureEraser
    notifier: NotifierPort
    clock: Clock = field(default_factory=SystemClock)
    events: LifecycleEvents = field(default_factory=LifecycleEvents)
    max_attempts: int = 5
    claim_ttl_seconds: int = 3600
    db_retry: DatabaseRetry = field(default_factory=DatabaseRetry)


@dataclass
class PipelineOutcome:
    """What one run_group call did for a group."""
    group_id: UUID
    result: str
    status: Optional[SweepStatus] = None
    error: Optional[str] = None
    notifications_sent: int = 0
    notifications_failed: int = 0
    files_erased: int = 0
    artifact_id: Optional[UUID] = None

    def to_dict(self):
        return {
            "group_id": str(self.group_id),
            "result": self.result,
            "status": self.status.value if self.status else None,
            "error": self.error,
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
            "files_erased": self.files_erased,
            "artifact_id": str(self.artifact_id) if self.artifact_id else None,
        }


class ShutdownRequested(Exception):
    """Raised between stages once the orchestrator was asked to stop."""
    pass


def new_claim_token() -> str:
    """Identifies the claiming worker in sweep_run.claimed_by."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:12]}"


class SweepOrchestrator:
    """Runs the per-group lifecycle pipeline.

    Safe to call run_group for distinct groups from several threads; each
    call works with its own sessions.
    """

    def __init__(self, deps: LifecycleDependencies):
        self.deps = deps
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Let in-flight pipelines finish their current stage, then stop."""
        self._stop_event.set()

    def reset_stop(self) -> None:
        self._stop_event.clear()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def _checkpoint(self) -> None:
        if self._stop_event.is_set():
            raise ShutdownRequested()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run_group(self, group_id: UUID) -> PipelineOutcome:
        """Claim a group and drive it as far through the pipeline as possible.

        Never raises for lifecycle or database failures; they are recorded
        on the group's sweep run and reported in the outcome.
        """
        outcome = PipelineOutcome(group_id=group_id, result=PipelineResult.SKIPPED)
        if self.stopping:
            return outcome

        token = new_claim_token()
        try:
            claimed = self._db(lambda s: self._claim(s, group_id, token))
        except (TransientIOError, SQLAlchemyError) as e:
            logger.error(
                f"Could not claim group {group_id}: {e}",
                extra={"group_id": str(group_id), "error": str(e)},
            )
            outcome.result = PipelineResult.ERROR
            outcome.error = str(e)
            group_pipelines_total.labels(result=outcome.result).inc()
            return outcome

        if not claimed:
            logger.debug(f"Group {group_id} already claimed or purged, skipping")
            group_pipelines_total.labels(result=outcome.result).inc()
            return outcome

        groups_in_sweep.inc()
        try:
            self._run_claimed(group_id, token, outcome)
        finally:
            groups_in_sweep.dec()
            if outcome.status != SweepStatus.PURGED:
                self._release_claim(group_id, token)

        group_pipelines_total.labels(result=outcome.result).inc()
        return outcome

    def _run_claimed(self, group_id: UUID, token: str, outcome: PipelineOutcome) -> None:
        stage: Optional[SweepStatus] = None
        try:
            stage = self._db(lambda s: self._enter_pipeline(s, group_id))
            outcome.status = stage

            if stage == SweepStatus.EXPORTING:
                self._checkpoint()
                outcome.artifact_id = self._export_stage(group_id)
                stage = outcome.status = SweepStatus.NOTIFYING

            if stage == SweepStatus.NOTIFYING:
                self._checkpoint()
                self._notify_stage(group_id, outcome)
                stage = outcome.status = SweepStatus.ERASING

            if stage == SweepStatus.ERASING:
                self._checkpoint()
                self._erase_stage(group_id, outcome)
                self._checkpoint()
                self._purge_stage(group_id)
                outcome.status = SweepStatus.PURGED
                outcome.result = PipelineResult.PURGED

        except ShutdownRequested:
            logger.info(
                f"Stopping pipeline for group {group_id} after stage {stage.value if stage else '-'}",
                extra={"group_id": str(group_id), "status": stage.value if stage else None},
            )
            outcome.result = PipelineResult.SKIPPED
            return

        except (LifecycleError, SQLAlchemyError) as e:
            self._handle_failure(group_id, stage, e, outcome)
            return

        logger.info(
            f"Group {group_id} purged",
            extra={"group_id": str(group_id), "status": SweepStatus.PURGED.value},
        )
        self.deps.events.emit_group_purged(group_id)

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def _claim(self, session: Session, group_id: UUID, token: str) -> bool:
        now = self.deps.clock.now()

        if session.query(SweepRun.id).filter(SweepRun.group_id == group_id).first() is None:
            session.add(SweepRun(
                group_id=group_id,
                status=SweepStatus.PENDING.value,
                attempts=0,
                started_at=now,
                updated_at=now,
            ))
            try:
                session.commit()
            except IntegrityError:
                # Another worker created the row first; compete on the claim below
                session.rollback()

        stale_before = now - timedelta(seconds=self.deps.claim_ttl_seconds)
        claimed = (
            session.query(SweepRun)
            .filter(
                SweepRun.group_id == group_id,
                SweepRun.status.notin_([s.value for s in TERMINAL_STATES]),
                or_(SweepRun.claimed_by.is_(None), SweepRun.claimed_at < stale_before),
            )
            .update(
                {SweepRun.claimed_by: token, SweepRun.claimed_at: now},
                synchronize_session=False,
            )
        )
        session.commit()
        return claimed == 1

    def _release_claim(self, group_id: UUID, token: str) -> None:
        def release(session: Session) -> None:
            (
                session.query(SweepRun)
                .filter(SweepRun.group_id == group_id, SweepRun.claimed_by == token)
                .update(
                    {SweepRun.claimed_by: None, SweepRun.claimed_at: None},
                    synchronize_session=False,
                )
            )
            session.commit()

        try:
            self._db(release)
        except (TransientIOError, SQLAlchemyError):
            # The claim expires after claim_ttl_seconds
            logger.error(
                f"Failed to release claim on group {group_id}",
                extra={"group_id": str(group_id)},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Stage entry
    # ------------------------------------------------------------------

    def _enter_pipeline(self, session: Session, group_id: UUID) -> SweepStatus:
        """Resolve the stage to run and persist the transition into it."""
        run = self._get_run(session, group_id)
        status = run.sweep_status

        if status == SweepStatus.FAILED:
            has_artifact = self._get_artifact(session, group_id) is not None
            target = resume_status(has_artifact, run.notified_at is not None)
            logger.info(
                f"Resuming failed sweep of group {group_id} at {target.value}",
                extra={"group_id": str(group_id), "status": target.value, "attempts": run.attempts},
            )
            self._set_status(run, target)
            session.commit()
            return target

        if status == SweepStatus.PENDING:
            self._set_status(run, SweepStatus.EXPORTING)
            session.commit()
            return SweepStatus.EXPORTING

        # EXPORTING (crashed mid-build), NOTIFYING or ERASING
        return status

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def _export_stage(self, group_id: UUID) -> UUID:
        self._erase_stale_archives(group_id)

        session = self.deps.session_factory()
        try:
            result = self.deps.archive_builder.build(session, group_id)
        finally:
            session.close()

        try:
            artifact_id = self._db(lambda s: self._record_export(s, group_id, result))
        except (TransientIOError, SQLAlchemyError, StateTransitionError):
            # Unrecorded archive holds plaintext; the retry builds it again
            self._discard_archive(result.path)
            raise

        export_archive_bytes.observe(result.size_bytes)
        logger.info(
            f"Recorded export artifact for group {group_id}",
            extra={"group_id": str(group_id), "artifact_id": str(artifact_id), "path": result.path},
        )
        return artifact_id

    def _record_export(self, session: Session, group_id: UUID, result: ArchiveResult) -> UUID:
        run = self._get_run(session, group_id)
        artifact = ExportArtifact(
            group_id=group_id,
            group_name=result.group_name,
            file_path=result.path,
            sha256=result.sha256,
            size_bytes=result.size_bytes,
            created_at=self.deps.clock.now(),
        )
        session.add(artifact)
        session.flush()

        run.export_artifact_id = artifact.id
        self._set_status(run, SweepStatus.NOTIFYING)
        session.commit()
        return artifact.id

    def _erase_stale_archives(self, group_id: UUID) -> None:
        """Erase archives a crashed export left behind before building again.

        No artifact is recorded while a run is exporting, so every sweep
        archive of the group found here is unrecorded plaintext. A failed
        erase raises SecureDeleteError and the export is retried next tick.
        """
        for path in stale_archives(self.deps.archive_builder.export_dir, group_id):
            logger.warning(
                f"Erasing unrecorded archive {path} of group {group_id}",
                extra={"group_id": str(group_id), "path": path},
            )
            self.deps.eraser.erase(path)

    def _discard_archive(self, path: str) -> None:
        try:
            self.deps.eraser.erase(path)
        except SecureDeleteError:
            logger.error(f"Failed to erase unrecorded archive {path}", extra={"path": path}, exc_info=True)

    # ------------------------------------------------------------------
    # Notify
    # ------------------------------------------------------------------

    def _notify_stage(self, group_id: UUID, outcome: PipelineOutcome) -> None:
        group_name, archive_path, recipients = self._db(
            lambda s: self._load_notification_data(s, group_id)
        )
        subject, body = build_export_email(group_name)
        attachment_name = f"{safe_archive_name(group_name)}_export.zip"

        for recipient in recipients:
            try:
                result = self.deps.notifier.send(
                    recipient, subject, body, archive_path, attachment_name=attachment_name
                )
                success, error = result.success, result.error
            except Exception as e:
                # Notifier contract says never raise; isolate misbehaving adapters
                logger.error(
                    f"Notifier raised for {recipient}",
                    extra={"group_id": str(group_id), "recipient": recipient},
                    exc_info=True,
                )
                success, error = False, str(e)

            if success:
                outcome.notifications_sent += 1
                notifications_total.labels(status="sent").inc()
            else:
                outcome.notifications_failed += 1
                notifications_total.labels(status="failed").inc()
                logger.warning(
                    f"Export notification to {recipient} failed: {error}",
                    extra={"group_id": str(group_id), "recipient": recipient, "error": error},
                )

        def finish(session: Session) -> None:
            run = self._get_run(session, group_id)
            self._set_status(run, SweepStatus.ERASING)
            run.notified_at = self.deps.clock.now()
            session.commit()

        self._db(finish)
        logger.info(
            f"Notified {outcome.notifications_sent}/{len(recipients)} members of group {group_id}",
            extra={"group_id": str(group_id), "status": SweepStatus.ERASING.value},
        )

    def _load_notification_data(self, session: Session, group_id: UUID) -> Tuple[str, str, List[str]]:
        artifact = self._require_artifact(session, group_id)
        group = session.get(Group, group_id)
        group_name = group.name if group is not None else artifact.group_name
        recipients = [
            email for (email,) in (
                session.query(User.email)
                .join(GroupMember, GroupMember.user_id == User.id)
                .filter(GroupMember.group_id == group_id)
                .order_by(GroupMember.joined_at.asc(), User.email.asc())
            )
        ]
        return group_name, artifact.file_path, recipients

    # ------------------------------------------------------------------
    # Erase
    # ------------------------------------------------------------------

    def _erase_stage(self, group_id: UUID, outcome: PipelineOutcome) -> None:
        self._db(lambda s: self._verify_artifact(s, group_id))

        pending = self._db(lambda s: self._pending_attachments(s, group_id))
        for attachment_id, encrypted_path in pending:
            self._checkpoint()
            try:
                path = self.deps.cipher.decrypt(encrypted_path)
            except CryptoError as e:
                raise SecureDeleteError(
                    f"attachment:{attachment_id}", f"storage path cannot be decrypted: {e}"
                ) from e

            self.deps.eraser.erase(path)
            self._db(lambda s: self._mark_erased(s, attachment_id))
            outcome.files_erased += 1
            files_erased_total.inc()
            logger.debug(
                f"Erased attachment {attachment_id}",
                extra={"group_id": str(group_id), "attachment_id": str(attachment_id)},
            )

    def _verify_artifact(self, session: Session, group_id: UUID) -> None:
        """Erasure requires a recorded artifact whose archive still matches its hash."""
        artifact = self._require_artifact(session, group_id)
        try:
            digest = file_sha256(artifact.file_path)
        except OSError as e:
            raise ArchiveError(
                f"Export archive {artifact.file_path} unreadable, refusing to erase: {e}", group_id
            ) from e
        if digest != artifact.sha256:
            raise ArchiveError(
                f"Export archive {artifact.file_path} does not match its recorded hash, refusing to erase",
                group_id,
            )

    def _pending_attachments(self, session: Session, group_id: UUID) -> List[Tuple[UUID, str]]:
        return [
            (attachment_id, file_path) for attachment_id, file_path in (
                session.query(Attachment.id, Attachment.file_path)
                .join(Message, Attachment.message_id == Message.id)
                .filter(Message.group_id == group_id, Attachment.erased_at.is_(None))
                .order_by(Attachment.uploaded_at.asc(), Attachment.id.asc())
            )
        ]

    def _mark_erased(self, session: Session, attachment_id: UUID) -> None:
        session.query(Attachment).filter(Attachment.id == attachment_id).update(
            {Attachment.erased_at: self.deps.clock.now()}, synchronize_session=False
        )
        session.commit()

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    def _purge_stage(self, group_id: UUID) -> None:
        self._db(lambda s: self._purge(s, group_id))

    def _purge(self, session: Session, group_id: UUID) -> None:
        run = self._get_run(session, group_id)
        self._require_artifact(session, group_id)

        group_messages = select(Message.id).where(Message.group_id == group_id)
        unerased = (
            session.query(func.count(Attachment.id))
            .filter(Attachment.message_id.in_(group_messages), Attachment.erased_at.is_(None))
            .scalar()
        )
        if unerased:
            raise SecureDeleteError(f"group:{group_id}", f"{unerased} attachment file(s) not erased")

        # Children before parents
        session.query(Attachment).filter(
            Attachment.message_id.in_(group_messages)
        ).delete(synchronize_session=False)
        session.query(Message).filter(Message.group_id == group_id).delete(synchronize_session=False)
        session.query(GroupMember).filter(GroupMember.group_id == group_id).delete(synchronize_session=False)
        session.query(Group).filter(Group.id == group_id).delete(synchronize_session=False)
        session.flush()

        remaining = (
            session.query(func.count(Message.id)).filter(Message.group_id == group_id).scalar()
            + session.query(func.count(Group.id)).filter(Group.id == group_id).scalar()
        )
        if remaining:
            raise LifecycleError(f"Purge of group {group_id} left {remaining} row(s) behind")

        now = self.deps.clock.now()
        self._set_status(run, SweepStatus.PURGED)
        run.completed_at = now
        run.claimed_by = None
        run.claimed_at = None
        run.last_error = None
        run.error_json = None
        session.commit()

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _handle_failure(
        self,
        group_id: UUID,
        stage: Optional[SweepStatus],
        error: Exception,
        outcome: PipelineOutcome,
    ) -> None:
        outcome.error = str(error)

        try:
            final_status, attempts = self._db(lambda s: self._record_failure(s, group_id, error))
        except (TransientIOError, SQLAlchemyError, StateTransitionError):
            logger.error(
                f"Failed to record sweep failure for group {group_id}",
                extra={"group_id": str(group_id)},
                exc_info=True,
            )
            outcome.result = PipelineResult.ERROR
            return

        outcome.status = final_status
        if final_status == SweepStatus.FAILED:
            outcome.result = PipelineResult.FAILED
        elif stage == SweepStatus.EXPORTING:
            outcome.result = PipelineResult.EXPORT_FAILED
        elif stage == SweepStatus.ERASING:
            outcome.result = PipelineResult.ERASE_BLOCKED
        else:
            outcome.result = PipelineResult.ERROR

        logger.error(
            f"Sweep of group {group_id} failed at {stage.value if stage else 'claim'}: {error}",
            extra={
                "group_id": str(group_id),
                "status": final_status.value,
                "attempts": attempts,
                "path": getattr(error, "path", None),
                "error": type(error).__name__,
            },
        )

    def _record_failure(self, session: Session, group_id: UUID, error: Exception) -> Tuple[SweepStatus, int]:
        run = self._get_run(session, group_id)
        current = run.sweep_status
        run.attempts = (run.attempts or 0) + 1

        if run.attempts >= self.deps.max_attempts:
            target = SweepStatus.FAILED
        elif current == SweepStatus.EXPORTING:
            # Nothing durable happened yet; retry the export from scratch
            target = SweepStatus.PENDING
        else:
            target = current

        if target != current:
            self._set_status(run, target)
        run.last_error = str(error)
        run.error_json = {
            "type": type(error).__name__,
            "stage": current.value,
            "message": str(error),
            "path": getattr(error, "path", None),
        }
        run.updated_at = self.deps.clock.now()
        session.commit()
        return target, run.attempts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _db(self, operation):
        return self.deps.db_retry.run(self.deps.session_factory, operation)

    def _set_status(self, run: SweepRun, new_status: SweepStatus) -> None:
        validate_transition(run.sweep_status, new_status)
        if new_status in POST_EXPORT_STATES and run.export_artifact_id is None:
            raise StateTransitionError(
                f"Run of group {run.group_id} cannot enter {new_status.value} without an export artifact"
            )
        run.status = new_status.value
        run.updated_at = self.deps.clock.now()

    @staticmethod
    def _get_run(session: Session, group_id: UUID) -> SweepRun:
        run = session.query(SweepRun).filter(SweepRun.group_id == group_id).one_or_none()
        if run is None:
            raise LifecycleError(f"No sweep run for group {group_id}")
        return run

    @staticmethod
    def _get_artifact(session: Session, group_id: UUID) -> Optional[ExportArtifact]:
        return session.query(ExportArtifact).filter(ExportArtifact.group_id == group_id).one_or_none()

    def _require_artifact(self, session: Session, group_id: UUID) -> ExportArtifact:
        artifact = self._get_artifact(session, group_id)
        if artifact is None or not artifact.sha256:
            raise StateTransitionError(
                f"Group {group_id} has no recorded export artifact; erase and purge are not allowed"
            )
        return artifact
