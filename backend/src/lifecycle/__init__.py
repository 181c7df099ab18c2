"""Ephemeral data lifecycle engine.

Archive builder, sweep orchestrator and expiry sweep scheduler, plus the
admin router and Celery tasks that expose them.
"""

from .archive_builder import ArchiveBuilder, ArchiveResult, file_sha256
from .events import LifecycleEvents, lifecycle_events
from .orchestrator import (
    LifecycleDependencies,
    PipelineOutcome,
    PipelineResult,
    SweepOrchestrator,
)
from .retry import DatabaseRetry
from .scheduler import ExpirySweepScheduler, SweepReport, SweepTrigger

__all__ = [
    "ArchiveBuilder",
    "ArchiveResult",
    "file_sha256",
    "LifecycleEvents",
    "lifecycle_events",
    "LifecycleDependencies",
    "PipelineOutcome",
    "PipelineResult",
    "SweepOrchestrator",
    "DatabaseRetry",
    "ExpirySweepScheduler",
    "SweepReport",
    "SweepTrigger",
]
