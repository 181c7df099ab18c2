"""Pytest fixtures for the DropDeck lifecycle engine.

Provides reusable test fixtures for:
- An isolated SQLite database per test (file-backed, shared across threads)
- Content cipher with a fixed test key
- Fake clock, recording notifier and counting secure eraser
- Orchestrator and scheduler wired through the explicit dependency bundle

Usage:
    def test_sweep(scheduler, lifecycle_factory, fake_clock):
        group = lifecycle_factory.create_group(expires_in=timedelta(seconds=-1))
        report = scheduler.sweep_once()
        assert report.purged == 1
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

# Set environment variables BEFORE any imports to ensure they take effect
_bootstrap_dir = tempfile.mkdtemp(prefix="dropdeck-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_bootstrap_dir}/bootstrap.db")
os.environ.setdefault("CONTENT_ENCRYPTION_KEY", "test-content-key-with-at-least-32-bytes!")
os.environ.setdefault("EXPORT_PATH", os.path.join(_bootstrap_dir, "exports"))
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("SMTP_HOST", "smtp.test.invalid")

backend_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(backend_src))
sys.path.insert(0, str(Path(__file__).parent))

import pytest
from sqlalchemy.orm import sessionmaker, Session

from database import build_engine
from domain.lifecycle.errors import SecureDeleteError
from domain.lifecycle.ports import Clock, NotificationResult, NotifierPort
from infrastructure.encryption.content_cipher import ContentCipher, parse_key
from infrastructure.storage.secure_eraser import SecureEraser
from lifecycle.archive_builder import ArchiveBuilder
from lifecycle.events import LifecycleEvents
from lifecycle.orchestrator import LifecycleDependencies, SweepOrchestrator
from lifecycle.retry import DatabaseRetry
from lifecycle.scheduler import ExpirySweepScheduler
from models.base import Base

from fixtures.lifecycle import LifecycleFactory

TEST_KEY = "test-content-key-with-at-least-32-bytes!"
TEST_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
TEST_PASSES = 3


# =============================================================================
# Fakes
# =============================================================================

class FakeClock(Clock):
    """Deterministic clock; advance() moves time forward."""

    def __init__(self, now: datetime = TEST_NOW):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now


class RecordingNotifier(NotifierPort):
    """Records every send; recipients in fail_for get a failed result."""

    def __init__(self):
        self.sent = []
        self.fail_for = set()
        self.attachment_existed = []

    def send(self, recipient, subject, body, attachment_path=None, attachment_name=None):
        self.sent.append({
            "recipient": recipient,
            "subject": subject,
            "body": body,
            "attachment_path": attachment_path,
            "attachment_name": attachment_name,
        })
        self.attachment_existed.append(
            attachment_path is not None and os.path.isfile(attachment_path)
        )
        if recipient in self.fail_for:
            return NotificationResult(recipient=recipient, success=False, error="mailbox unavailable")
        return NotificationResult(recipient=recipient, success=True)

    @property
    def recipients(self):
        return [s["recipient"] for s in self.sent]


class CountingEraser(SecureEraser):
    """SecureEraser that records every overwrite pass.

    writes maps path -> list of byte counts, one entry per pass.
    Paths in fail_on raise SecureDeleteError instead of being erased.
    """

    def __init__(self, passes: int = TEST_PASSES):
        super().__init__(passes=passes)
        self.writes = {}
        self.erased = []
        self.fail_on = set()
        self._current = None

    def erase(self, path: str) -> None:
        if path in self.fail_on:
            raise SecureDeleteError(path, "simulated write failure")
        self._current = path
        try:
            super().erase(path)
        finally:
            self._current = None
        self.erased.append(path)

    def _overwrite(self, fd, size, source):
        super()._overwrite(fd, size, source)
        self.writes.setdefault(self._current, []).append(size)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine(tmp_path):
    """SQLite file database with all tables, one per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'dropdeck.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# =============================================================================
# Lifecycle collaborators
# =============================================================================

@pytest.fixture
def cipher() -> ContentCipher:
    return ContentCipher(parse_key(TEST_KEY))


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def eraser() -> CountingEraser:
    return CountingEraser()


@pytest.fixture
def export_dir(tmp_path) -> Path:
    path = tmp_path / "exports"
    path.mkdir()
    return path


@pytest.fixture
def storage_dir(tmp_path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def archive_builder(cipher, export_dir, fake_clock, eraser) -> ArchiveBuilder:
    return ArchiveBuilder(cipher, str(export_dir), clock=fake_clock, eraser=eraser)


@pytest.fixture
def events() -> LifecycleEvents:
    return LifecycleEvents()


@pytest.fixture
def lifecycle_deps(session_factory, cipher, archive_builder, eraser, notifier, fake_clock, events):
    return LifecycleDependencies(
        session_factory=session_factory,
        cipher=cipher,
        archive_builder=archive_builder,
        eraser=eraser,
        notifier=notifier,
        clock=fake_clock,
        events=events,
        max_attempts=3,
        claim_ttl_seconds=3600,
        db_retry=DatabaseRetry(attempts=3, sleep=lambda seconds: None),
    )


@pytest.fixture
def orchestrator(lifecycle_deps) -> SweepOrchestrator:
    return SweepOrchestrator(lifecycle_deps)


@pytest.fixture
def scheduler(orchestrator) -> ExpirySweepScheduler:
    return ExpirySweepScheduler(orchestrator, max_workers=2, interval_seconds=60)


@pytest.fixture
def lifecycle_factory(session_factory, cipher, storage_dir, fake_clock) -> LifecycleFactory:
    return LifecycleFactory(session_factory, cipher, storage_dir, fake_clock)
