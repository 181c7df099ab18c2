"""Unit tests for lifecycle audit queries, manual export and export retention."""

import hashlib
import os
from datetime import timedelta
from uuid import uuid4

import pytest

from config import Settings
from domain.lifecycle.errors import ArchiveError, ConfigError
from domain.lifecycle.sweep_status import SweepStatus
from lifecycle import service
from lifecycle.archive_builder import stale_archives
from lifecycle.scheduler import ExpirySweepScheduler
from models.export_artifact import ExportArtifact
from models.sweep_run import SweepRun


@pytest.fixture
def purged_group(orchestrator, lifecycle_factory):
    group_id, *_ = lifecycle_factory.expired_group_with_content()
    orchestrator.run_group(group_id)
    return group_id


class TestExportArtifactQueries:

    def test_get_export_artifact(self, purged_group, db_session):
        artifact = service.get_export_artifact(db_session, purged_group)

        assert artifact is not None
        assert artifact.group_name == "Weekend Trip"

    def test_get_export_artifact_unknown_group(self, db_session):
        assert service.get_export_artifact(db_session, uuid4()) is None

    def test_list_export_artifacts_newest_first(self, orchestrator, lifecycle_factory, fake_clock, db_session):
        first = lifecycle_factory.create_group(name="First")
        orchestrator.run_group(first)
        fake_clock.advance(minutes=10)
        second = lifecycle_factory.create_group(name="Second")
        orchestrator.run_group(second)

        artifacts = service.list_export_artifacts(db_session)

        assert [a.group_name for a in artifacts] == ["Second", "First"]
        assert len(service.list_export_artifacts(db_session, limit=1, offset=1)) == 1

    def test_verify_export_hash(self, purged_group, db_session):
        artifact = service.get_export_artifact(db_session, purged_group)
        with open(artifact.file_path, "rb") as f:
            digest = hashlib.sha256(f.read()).hexdigest()

        ok = service.verify_export_hash(db_session, artifact.id, digest.upper())
        bad = service.verify_export_hash(db_session, artifact.id, "0" * 64)

        assert ok.valid and ok.matches_record and ok.matches_file
        assert not bad.valid
        assert bad.matches_file is True

    def test_verify_export_hash_detects_modified_file(self, purged_group, db_session):
        artifact = service.get_export_artifact(db_session, purged_group)
        with open(artifact.file_path, "ab") as f:
            f.write(b"junk")

        result = service.verify_export_hash(db_session, artifact.id, artifact.sha256)

        assert result.matches_record is True
        assert result.matches_file is False
        assert not result.valid

    def test_verify_unknown_artifact(self, db_session):
        assert service.verify_export_hash(db_session, uuid4(), "0" * 64) is None


class TestSweepRunQueries:

    def test_list_sweep_runs_by_status(self, orchestrator, lifecycle_factory, eraser, db_session):
        done = lifecycle_factory.create_group(name="done")
        orchestrator.run_group(done)
        stuck, _, _, attachment_ids = lifecycle_factory.expired_group_with_content()
        eraser.fail_on.add(lifecycle_factory.path_of(attachment_ids[0]))
        orchestrator.run_group(stuck)

        erasing = service.list_sweep_runs(db_session, status=SweepStatus.ERASING)
        everything = service.list_sweep_runs(db_session)

        assert [r.group_id for r in erasing] == [stuck]
        assert erasing[0].last_error
        assert len(everything) == 2


class TestManualExport:

    def test_build_group_export_leaves_sweep_state_alone(self, archive_builder, lifecycle_factory, db_session):
        group_id = lifecycle_factory.create_group(expires_in=timedelta(days=3))
        lifecycle_factory.add_message(group_id, lifecycle_factory.add_member(group_id))

        result = service.build_group_export(db_session, archive_builder, group_id)

        assert os.path.isfile(result.path)
        assert result.message_count == 1
        assert db_session.query(ExportArtifact).count() == 0
        assert db_session.query(SweepRun).count() == 0

    def test_build_group_export_unknown_group(self, archive_builder, db_session):
        with pytest.raises(ArchiveError):
            service.build_group_export(db_session, archive_builder, uuid4())

    def test_manual_export_is_not_taken_for_a_sweep_leftover(
        self, archive_builder, lifecycle_factory, db_session, export_dir
    ):
        group_id = lifecycle_factory.create_group(expires_in=timedelta(days=3))

        result = service.build_group_export(db_session, archive_builder, group_id)

        assert "_manual_" in os.path.basename(result.path)
        assert stale_archives(str(export_dir), group_id) == []

    def test_discard_group_export_erases_file(self, archive_builder, lifecycle_factory, db_session, eraser):
        group_id = lifecycle_factory.create_group(expires_in=timedelta(days=3))
        result = service.build_group_export(db_session, archive_builder, group_id)

        service.discard_group_export(eraser, result.path)

        assert not os.path.exists(result.path)
        assert eraser.erased == [result.path]

    def test_discard_group_export_logs_erase_failure(self, archive_builder, lifecycle_factory, db_session, eraser):
        group_id = lifecycle_factory.create_group(expires_in=timedelta(days=3))
        result = service.build_group_export(db_session, archive_builder, group_id)
        eraser.fail_on.add(result.path)

        service.discard_group_export(eraser, result.path)

        assert os.path.exists(result.path)

    def test_group_exists(self, lifecycle_factory, db_session):
        group_id = lifecycle_factory.create_group()

        assert service.group_exists(db_session, group_id) is True
        assert service.group_exists(db_session, uuid4()) is False


class TestPurgeOldExports:

    def test_old_exports_of_purged_groups_are_erased(self, purged_group, db_session, eraser, fake_clock):
        artifact = service.get_export_artifact(db_session, purged_group)
        path = artifact.file_path
        fake_clock.advance(days=31)

        stats = service.purge_old_exports(db_session, eraser, days=30, clock=fake_clock)

        assert stats.artifacts_deleted == 1
        assert stats.files_erased == 1
        assert stats.errors == []
        assert not os.path.exists(path)
        assert service.get_export_artifact(db_session, purged_group) is None
        run = db_session.query(SweepRun).filter(SweepRun.group_id == purged_group).one()
        assert run.export_artifact_id is None
        assert run.status == SweepStatus.PURGED.value

    def test_recent_exports_are_kept(self, purged_group, db_session, eraser, fake_clock):
        fake_clock.advance(days=29)

        stats = service.purge_old_exports(db_session, eraser, days=30, clock=fake_clock)

        assert stats.artifacts_deleted == 0
        assert service.get_export_artifact(db_session, purged_group) is not None

    def test_exports_of_unpurged_groups_are_kept(self, orchestrator, lifecycle_factory, eraser, db_session, fake_clock):
        group_id, _, _, attachment_ids = lifecycle_factory.expired_group_with_content()
        eraser.fail_on.add(lifecycle_factory.path_of(attachment_ids[0]))
        orchestrator.run_group(group_id)
        fake_clock.advance(days=90)

        stats = service.purge_old_exports(db_session, eraser, days=30, clock=fake_clock)

        assert stats.artifacts_deleted == 0
        assert service.get_export_artifact(db_session, group_id) is not None

    def test_erase_failure_keeps_row(self, purged_group, db_session, eraser, fake_clock):
        artifact = service.get_export_artifact(db_session, purged_group)
        eraser.fail_on.add(artifact.file_path)
        fake_clock.advance(days=31)

        stats = service.purge_old_exports(db_session, eraser, days=30, clock=fake_clock)

        assert stats.artifacts_deleted == 0
        assert len(stats.errors) == 1
        assert os.path.exists(artifact.file_path)


class TestWiring:

    def test_build_scheduler_from_settings(self, session_factory, notifier, tmp_path):
        settings = Settings(
            CONTENT_ENCRYPTION_KEY="k" * 32,
            EXPORT_PATH=str(tmp_path / "exports"),
            SWEEP_MAX_WORKERS=3,
            SECURE_DELETE_PASSES=5,
        )

        scheduler = service.build_scheduler(settings, session_factory=session_factory, notifier=notifier)

        assert isinstance(scheduler, ExpirySweepScheduler)
        assert scheduler.max_workers == 3
        assert scheduler.deps.eraser.passes == 5
        assert scheduler.deps.notifier is notifier
        assert scheduler.deps.archive_builder.export_dir == str(tmp_path / "exports")

    def test_missing_key_fails_fast(self, session_factory):
        settings = Settings(CONTENT_ENCRYPTION_KEY=None)

        with pytest.raises(ConfigError):
            service.build_dependencies(settings, session_factory=session_factory)
