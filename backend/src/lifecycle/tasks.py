"""Celery tasks driving the expiry sweep.

Tasks:
- lifecycle.sweep_once: every SWEEP_INTERVAL_SECONDS via Celery Beat
- lifecycle.sweep_safety_net: daily at SAFETY_NET_HOUR_UTC:00
- lifecycle.purge_old_exports: daily export retention cleanup

The beat schedule lives in workers.celery_app. Single-flight holds per
worker process; the per-group claim keeps several worker processes from
running the same group at once.
"""

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from celery import shared_task

from config import get_settings
from database import SessionLocal
from infrastructure.storage.secure_eraser import SecureEraser
from .scheduler import ExpirySweepScheduler, SweepTrigger
from .service import build_scheduler, purge_old_exports

logger = logging.getLogger(__name__)


@lru_cache()
def get_worker_scheduler() -> ExpirySweepScheduler:
    """Scheduler shared by all tasks in this worker process.

    Raises:
        ConfigError: If the content encryption key is missing or too short
    """
    return build_scheduler(get_settings())


@shared_task(name="lifecycle.sweep_once", bind=True, ignore_result=False)
def sweep_once_task(self) -> Dict[str, Any]:
    """Run one interval sweep."""
    report = get_worker_scheduler().sweep_once(SweepTrigger.INTERVAL)
    return _summary(report)


@shared_task(name="lifecycle.sweep_safety_net", bind=True)
def sweep_safety_net_task(self) -> Dict[str, Any]:
    """Daily safety-net sweep, catching groups missed by interval ticks."""
    report = get_worker_scheduler().sweep_once(SweepTrigger.SAFETY_NET)
    return _summary(report)


@shared_task(name="lifecycle.purge_old_exports", bind=True)
def purge_old_exports_task(self, days: Optional[int] = None) -> Dict[str, Any]:
    """Erase export archives of purged groups older than the retention period.

    Args:
        days: Override of EXPORT_RETENTION_DAYS
    """
    settings = get_settings()
    days = days or settings.EXPORT_RETENTION_DAYS
    eraser = SecureEraser(passes=settings.SECURE_DELETE_PASSES)

    db = SessionLocal()
    try:
        stats = purge_old_exports(db, eraser, days)
    finally:
        db.close()

    result = stats.to_dict()
    result["status"] = "completed" if not stats.errors else "partial"
    logger.info(
        f"Export retention task finished: {stats.artifacts_deleted} removed, {len(stats.errors)} errors"
    )
    return result


def _summary(report) -> Dict[str, Any]:
    return {
        "status": "skipped" if report.skipped else ("error" if report.error else "completed"),
        "sweep_id": report.sweep_id,
        "trigger": report.trigger,
        "due_groups": report.due_groups,
        "purged": report.purged,
        "error": report.error,
    }
