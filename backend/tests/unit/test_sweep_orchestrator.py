"""Unit tests for the per-group sweep pipeline."""

import os
from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from domain.lifecycle.errors import ArchiveError, StateTransitionError
from domain.lifecycle.sweep_status import SweepStatus
from lifecycle.orchestrator import PipelineResult, SweepOrchestrator
from models.attachment import Attachment
from models.export_artifact import ExportArtifact
from models.group import Group, GroupMember
from models.message import Message
from models.sweep_run import SweepRun


def get_run(session_factory, group_id):
    with session_factory() as s:
        run = s.query(SweepRun).filter(SweepRun.group_id == group_id).one_or_none()
        if run is not None:
            s.expunge(run)
        return run


def get_artifact(session_factory, group_id):
    with session_factory() as s:
        artifact = s.query(ExportArtifact).filter(ExportArtifact.group_id == group_id).one_or_none()
        if artifact is not None:
            s.expunge(artifact)
        return artifact


def row_counts(session_factory, group_id, message_ids):
    with session_factory() as s:
        return {
            "group": s.query(Group).filter(Group.id == group_id).count(),
            "members": s.query(GroupMember).filter(GroupMember.group_id == group_id).count(),
            "messages": s.query(Message).filter(Message.group_id == group_id).count(),
            "attachments": s.query(Attachment).filter(Attachment.message_id.in_(message_ids)).count(),
        }


class TestFullPipeline:

    def test_expired_group_is_exported_notified_erased_and_purged(
        self, orchestrator, lifecycle_factory, session_factory, notifier, eraser, events
    ):
        group_id, member_ids, message_ids, attachment_ids = lifecycle_factory.expired_group_with_content(
            messages=3, attachments=2, members=3
        )
        paths = [lifecycle_factory.path_of(a) for a in attachment_ids]
        purged = []
        events.on_group_purged(purged.append)

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.PURGED
        assert outcome.status == SweepStatus.PURGED
        assert outcome.notifications_sent == 3
        assert outcome.files_erased == 2

        artifact = get_artifact(session_factory, group_id)
        assert artifact is not None
        assert len(artifact.sha256) == 64
        assert os.path.isfile(artifact.file_path)
        assert outcome.artifact_id == artifact.id

        run = get_run(session_factory, group_id)
        assert run.status == SweepStatus.PURGED.value
        assert run.completed_at is not None
        assert run.notified_at is not None
        assert run.claimed_by is None
        assert run.export_artifact_id == artifact.id

        assert row_counts(session_factory, group_id, message_ids) == {
            "group": 0, "members": 0, "messages": 0, "attachments": 0,
        }
        for path in paths:
            assert not os.path.exists(path)
            assert eraser.writes[path] == [1024] * 4
        assert purged == [group_id]

    def test_notification_carries_archive_and_email_text(
        self, orchestrator, lifecycle_factory, notifier, session_factory
    ):
        group_id, *_ = lifecycle_factory.expired_group_with_content(members=2)

        orchestrator.run_group(group_id)

        artifact = get_artifact(session_factory, group_id)
        assert len(notifier.sent) == 2
        assert len(set(notifier.recipients)) == 2
        for sent in notifier.sent:
            assert sent["subject"] == "Your Weekend Trip group export is ready"
            assert "permanently deleted" in sent["body"]
            assert sent["attachment_path"] == artifact.file_path
            assert sent["attachment_name"] == "Weekend_Trip_export.zip"
        # The archive existed when each email went out
        assert all(notifier.attachment_existed)

    def test_notification_failure_does_not_block_purge(
        self, orchestrator, lifecycle_factory, notifier, session_factory
    ):
        group_id, *_ = lifecycle_factory.expired_group_with_content(members=2)
        notifier.fail_for.add("user1@example.com")

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.PURGED
        assert outcome.notifications_failed == 1
        assert outcome.notifications_sent == 1

    def test_raising_notifier_is_isolated(self, orchestrator, lifecycle_factory, notifier):
        group_id, *_ = lifecycle_factory.expired_group_with_content(members=2)

        with patch.object(notifier, "send", side_effect=RuntimeError("adapter bug")):
            outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.PURGED
        assert outcome.notifications_failed == 2

    def test_failing_listener_does_not_undo_purge(self, orchestrator, lifecycle_factory, events, session_factory):
        group_id, *_ = lifecycle_factory.expired_group_with_content()

        @events.on_group_purged
        def broken(_group_id):
            raise RuntimeError("socket hub down")

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.PURGED
        assert get_run(session_factory, group_id).status == SweepStatus.PURGED.value

    def test_purged_group_is_skipped(self, orchestrator, lifecycle_factory, notifier):
        group_id, *_ = lifecycle_factory.expired_group_with_content()
        orchestrator.run_group(group_id)
        sends = len(notifier.sent)

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.SKIPPED
        assert len(notifier.sent) == sends


class TestExportFailure:

    def test_export_failure_leaves_pending_and_erases_nothing(
        self, orchestrator, lifecycle_factory, session_factory, eraser, notifier, archive_builder
    ):
        group_id, _, message_ids, attachment_ids = lifecycle_factory.expired_group_with_content()

        with patch.object(archive_builder, "build", side_effect=ArchiveError("db gone", group_id)):
            outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.EXPORT_FAILED
        run = get_run(session_factory, group_id)
        assert run.status == SweepStatus.PENDING.value
        assert run.attempts == 1
        assert "db gone" in run.last_error
        assert run.claimed_by is None
        assert get_artifact(session_factory, group_id) is None
        assert eraser.erased == []
        assert notifier.sent == []
        assert os.path.exists(lifecycle_factory.path_of(attachment_ids[0]))
        assert row_counts(session_factory, group_id, message_ids)["messages"] == 3

    def test_exhausted_retries_mark_failed_then_resume(
        self, orchestrator, lifecycle_factory, session_factory, archive_builder
    ):
        group_id, *_ = lifecycle_factory.expired_group_with_content()

        with patch.object(archive_builder, "build", side_effect=ArchiveError("disk", group_id)):
            outcomes = [orchestrator.run_group(group_id) for _ in range(3)]

        assert [o.result for o in outcomes] == [
            PipelineResult.EXPORT_FAILED, PipelineResult.EXPORT_FAILED, PipelineResult.FAILED,
        ]
        run = get_run(session_factory, group_id)
        assert run.status == SweepStatus.FAILED.value
        assert run.error_json["type"] == "ArchiveError"

        # FAILED is retried on the next tick, not stuck
        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.PURGED

    def test_unrecorded_archive_is_erased(
        self, orchestrator, lifecycle_factory, session_factory, export_dir
    ):
        group_id, *_ = lifecycle_factory.expired_group_with_content()

        with patch.object(SweepOrchestrator, "_record_export", side_effect=OperationalError("INSERT", {}, Exception("gone"))):
            outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.EXPORT_FAILED
        assert os.listdir(export_dir) == []
        assert get_run(session_factory, group_id).status == SweepStatus.PENDING.value

    def test_archive_left_by_crashed_export_is_erased_before_rebuild(
        self, orchestrator, lifecycle_factory, session_factory, archive_builder, eraser, export_dir, fake_clock
    ):
        group_id, *_ = lifecycle_factory.expired_group_with_content()
        with session_factory() as s:
            s.add(SweepRun(group_id=group_id, status=SweepStatus.EXPORTING.value, attempts=0))
            s.commit()
        # Worker died between building the archive and recording it
        with session_factory() as s:
            orphan = archive_builder.build(s, group_id).path
        with open(orphan + ".part", "wb") as f:
            f.write(b"PK\x03\x04half written")
        fake_clock.advance(minutes=5)

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.PURGED
        artifact = get_artifact(session_factory, group_id)
        assert artifact.file_path == orphan
        assert os.listdir(export_dir) == [os.path.basename(orphan)]
        assert eraser.erased[:2] == [orphan, orphan + ".part"]

    def test_unerasable_leftover_archive_blocks_export(
        self, orchestrator, lifecycle_factory, session_factory, archive_builder, eraser
    ):
        group_id, *_ = lifecycle_factory.expired_group_with_content()
        with session_factory() as s:
            orphan = archive_builder.build(s, group_id).path
        eraser.fail_on.add(orphan)

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.EXPORT_FAILED
        assert get_run(session_factory, group_id).status == SweepStatus.PENDING.value
        assert get_artifact(session_factory, group_id) is None
        assert os.path.exists(orphan)


class TestEraseFailure:

    def test_erase_failure_on_second_of_three_attachments(
        self, orchestrator, lifecycle_factory, session_factory, eraser
    ):
        group_id, _, message_ids, attachment_ids = lifecycle_factory.expired_group_with_content(attachments=3)
        paths = [lifecycle_factory.path_of(a) for a in attachment_ids]
        eraser.fail_on.add(paths[1])

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.ERASE_BLOCKED
        assert outcome.files_erased == 1
        run = get_run(session_factory, group_id)
        assert run.status == SweepStatus.ERASING.value
        assert run.attempts == 1
        assert run.error_json["path"] == paths[1]

        # #1 erased and marked, #2 and #3 untouched, nothing purged
        assert not os.path.exists(paths[0])
        assert os.path.exists(paths[1]) and os.path.exists(paths[2])
        with session_factory() as s:
            assert s.get(Attachment, attachment_ids[0]).erased_at is not None
            assert s.get(Attachment, attachment_ids[1]).erased_at is None
        assert row_counts(session_factory, group_id, message_ids) == {
            "group": 1, "members": 2, "messages": 3, "attachments": 3,
        }

        # Next tick resumes at #2 without re-erasing #1
        eraser.fail_on.clear()
        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.PURGED
        assert outcome.files_erased == 2
        assert eraser.erased == [paths[0], paths[1], paths[2]]
        assert len(eraser.writes[paths[0]]) == 4

    def test_resume_does_not_export_or_notify_again(
        self, orchestrator, lifecycle_factory, session_factory, eraser, notifier
    ):
        group_id, _, _, attachment_ids = lifecycle_factory.expired_group_with_content(attachments=1)
        eraser.fail_on.add(lifecycle_factory.path_of(attachment_ids[0]))
        orchestrator.run_group(group_id)
        artifact_before = get_artifact(session_factory, group_id)
        sends = len(notifier.sent)

        eraser.fail_on.clear()
        orchestrator.run_group(group_id)

        assert get_artifact(session_factory, group_id).id == artifact_before.id
        assert len(notifier.sent) == sends

    def test_repeated_erase_failure_marks_failed_and_resumes_at_erase(
        self, orchestrator, lifecycle_factory, session_factory, eraser, notifier
    ):
        group_id, _, _, attachment_ids = lifecycle_factory.expired_group_with_content(attachments=1)
        eraser.fail_on.add(lifecycle_factory.path_of(attachment_ids[0]))

        results = [orchestrator.run_group(group_id).result for _ in range(3)]

        assert results[-1] == PipelineResult.FAILED
        assert get_run(session_factory, group_id).status == SweepStatus.FAILED.value

        eraser.fail_on.clear()
        sends = len(notifier.sent)
        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.PURGED
        assert len(notifier.sent) == sends

    def test_tampered_archive_blocks_erase(
        self, orchestrator, lifecycle_factory, session_factory, eraser
    ):
        group_id, _, message_ids, attachment_ids = lifecycle_factory.expired_group_with_content(attachments=2)
        paths = [lifecycle_factory.path_of(a) for a in attachment_ids]
        eraser.fail_on.add(paths[0])
        orchestrator.run_group(group_id)

        artifact = get_artifact(session_factory, group_id)
        with open(artifact.file_path, "ab") as f:
            f.write(b"tampered")
        eraser.fail_on.clear()

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.ERASE_BLOCKED
        assert "hash" in outcome.error
        assert os.path.exists(paths[0]) and os.path.exists(paths[1])
        assert row_counts(session_factory, group_id, message_ids)["group"] == 1

    def test_undecryptable_attachment_path_blocks_erase(
        self, orchestrator, lifecycle_factory, session_factory
    ):
        group_id, _, message_ids, attachment_ids = lifecycle_factory.expired_group_with_content(attachments=1)
        with session_factory() as s:
            s.get(Attachment, attachment_ids[0]).file_path = "not-a-blob"
            s.commit()

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.ERASE_BLOCKED
        assert row_counts(session_factory, group_id, message_ids)["attachments"] == 1


class TestClaim:

    def test_live_claim_is_respected(self, orchestrator, lifecycle_factory, session_factory, fake_clock, notifier):
        group_id, *_ = lifecycle_factory.expired_group_with_content()
        with session_factory() as s:
            s.add(SweepRun(
                group_id=group_id,
                status=SweepStatus.PENDING.value,
                claimed_by="other-host:1:abc",
                claimed_at=fake_clock.now() - timedelta(minutes=5),
            ))
            s.commit()

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.SKIPPED
        assert notifier.sent == []
        assert get_run(session_factory, group_id).claimed_by == "other-host:1:abc"

    def test_stale_claim_is_taken_over(self, orchestrator, lifecycle_factory, session_factory, fake_clock):
        group_id, *_ = lifecycle_factory.expired_group_with_content()
        with session_factory() as s:
            s.add(SweepRun(
                group_id=group_id,
                status=SweepStatus.NOTIFYING.value,
                claimed_by="crashed-host:1:abc",
                claimed_at=fake_clock.now() - timedelta(hours=2),
            ))
            s.commit()

        # NOTIFYING without an artifact can never erase
        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.ERROR
        assert get_run(session_factory, group_id).claimed_by is None
        with session_factory() as s:
            assert s.query(Group).filter(Group.id == group_id).count() == 1

    def test_transient_claim_failure_is_retried_then_reported(self, orchestrator, lifecycle_factory):
        group_id, *_ = lifecycle_factory.expired_group_with_content()

        with patch.object(
            SweepOrchestrator, "_claim",
            side_effect=OperationalError("UPDATE", {}, Exception("database is locked")),
        ) as claim:
            outcome = orchestrator.run_group(group_id)

        assert claim.call_count == 3
        assert outcome.result == PipelineResult.ERROR

    def test_stop_requested_skips_new_groups(self, orchestrator, lifecycle_factory, session_factory):
        group_id, *_ = lifecycle_factory.expired_group_with_content()
        orchestrator.request_stop()

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.SKIPPED
        assert get_run(session_factory, group_id) is None

    def test_unknown_group_fails_export(self, orchestrator, session_factory):
        group_id = uuid4()

        outcome = orchestrator.run_group(group_id)

        assert outcome.result == PipelineResult.EXPORT_FAILED
        assert get_run(session_factory, group_id).status == SweepStatus.PENDING.value


class TestStatusGuard:

    def test_post_export_stage_requires_artifact(self, orchestrator):
        run = SweepRun(group_id=uuid4(), status=SweepStatus.EXPORTING.value)

        with pytest.raises(StateTransitionError):
            orchestrator._set_status(run, SweepStatus.NOTIFYING)

        assert run.status == SweepStatus.EXPORTING.value

