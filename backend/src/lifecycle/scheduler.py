"""Expiry sweep scheduler.

sweep_once() selects every group whose expiry_time has passed, whose sweep
run is not PURGED and not currently claimed, and runs the orchestrator
pipeline for each of them on a bounded worker pool.

Only one sweep_once runs per process at a time. A tick that finds a sweep
in flight is skipped, not queued. Across processes the per-group claim in
the orchestrator keeps pipelines exclusive.

The timer thread started by start() only decides when to sweep; every
sweep runs on its own runner thread so slow I/O never delays the timer.
Celery beat can drive sweep_once instead (see lifecycle.tasks).
"""

import contextvars
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from domain.lifecycle.errors import TransientIOError
from domain.lifecycle.sweep_status import TERMINAL_STATES
from models.group import Group
from models.sweep_run import SweepRun
from observability.metrics import sweep_duration_seconds, sweeps_total
from observability.request_id import generate_request_id, set_sweep_id, sweep_id_var
from .orchestrator import PipelineOutcome, PipelineResult, SweepOrchestrator

logger = logging.getLogger(__name__)


class SweepTrigger:
    INTERVAL = "interval"
    SAFETY_NET = "safety_net"
    MANUAL = "manual"


@dataclass
class SweepReport:
    """Summary of one sweep_once invocation."""
    sweep_id: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    due_groups: int = 0
    outcomes: List[PipelineOutcome] = field(default_factory=list)
    error: Optional[str] = None

    def count(self, result: str) -> int:
        return sum(1 for o in self.outcomes if o.result == result)

    @property
    def purged(self) -> int:
        return self.count(PipelineResult.PURGED)

    def to_dict(self):
        return {
            "sweep_id": self.sweep_id,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "due_groups": self.due_groups,
            "purged": self.purged,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "error": self.error,
        }


def select_due_groups(session: Session, now: datetime, stale_claim_before: datetime) -> List[UUID]:
    """Expired groups that are not PURGED and not held by a live claim."""
    rows = (
        session.query(Group.id)
        .outerjoin(SweepRun, SweepRun.group_id == Group.id)
        .filter(
            Group.expiry_time <= now,
            or_(
                SweepRun.id.is_(None),
                and_(
                    SweepRun.status.notin_([s.value for s in TERMINAL_STATES]),
                    or_(SweepRun.claimed_by.is_(None), SweepRun.claimed_at < stale_claim_before),
                ),
            ),
        )
        .order_by(Group.expiry_time.asc(), Group.id.asc())
        .all()
    )
    return [group_id for (group_id,) in rows]


def next_safety_net_run(now: datetime, hour_utc: int) -> datetime:
    """Next HH:00 UTC strictly after now.

    Example:
        >>> next_safety_net_run(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc), 0)
        datetime.datetime(2025, 3, 2, 0, 0, tzinfo=datetime.timezone.utc)
    """
    candidate = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class ExpirySweepScheduler:
    """Single-flight, timer-driven trigger of the sweep orchestrator.

    Args:
        orchestrator: Per-group pipeline runner (carries the dependency bundle)
        max_workers: Bounded parallelism across distinct groups
        interval_seconds: Period of the regular sweep tick
        safety_net_hour_utc: Hour of the daily safety-net sweep
    """

    def __init__(
        self,
        orchestrator: SweepOrchestrator,
        max_workers: int = 4,
        interval_seconds: int = 60,
        safety_net_hour_utc: int = 0,
    ):
        self.orchestrator = orchestrator
        self.deps = orchestrator.deps
        self.max_workers = max_workers
        self.interval_seconds = interval_seconds
        self.safety_net_hour_utc = safety_net_hour_utc

        self._sweep_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None
        self._runner_threads: List[threading.Thread] = []
        self.last_report: Optional[SweepReport] = None

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    @property
    def sweep_in_progress(self) -> bool:
        return self._sweep_lock.locked()

    def trigger_sweep_now(self) -> SweepReport:
        """Run one sweep-once cycle on the calling thread (admin/manual use)."""
        return self.sweep_once(SweepTrigger.MANUAL)

    def sweep_once(self, trigger: str = SweepTrigger.MANUAL) -> SweepReport:
        """Run the pipeline for every due group, unless a sweep is already running."""
        sweep_id = generate_request_id()
        report = SweepReport(sweep_id=sweep_id, trigger=trigger, started_at=self.deps.clock.now())

        if not self._sweep_lock.acquire(blocking=False):
            report.skipped = True
            report.finished_at = report.started_at
            sweeps_total.labels(trigger=trigger, outcome="skipped").inc()
            logger.info(f"Sweep ({trigger}) skipped, previous sweep still running")
            return report

        token = set_sweep_id(sweep_id)
        start = time.monotonic()
        try:
            logger.info(f"Sweep ({trigger}) started")
            due = self._due_groups()
            report.due_groups = len(due)
            report.outcomes = self._run_groups(due)
            sweeps_total.labels(trigger=trigger, outcome="completed").inc()
        except (TransientIOError, SQLAlchemyError) as e:
            report.error = str(e)
            sweeps_total.labels(trigger=trigger, outcome="error").inc()
            logger.error(f"Sweep ({trigger}) could not select due groups: {e}", exc_info=True)
        finally:
            sweep_duration_seconds.observe(time.monotonic() - start)
            report.finished_at = self.deps.clock.now()
            sweep_id_var.reset(token)
            self.last_report = report
            self._sweep_lock.release()

        logger.info(
            f"Sweep ({trigger}) finished: {report.due_groups} due, {report.purged} purged",
            extra={"status": "completed" if report.error is None else "error"},
        )
        return report

    def _due_groups(self) -> List[UUID]:
        now = self.deps.clock.now()
        stale_before = now - timedelta(seconds=self.deps.claim_ttl_seconds)
        return self.deps.db_retry.run(
            self.deps.session_factory,
            lambda session: select_due_groups(session, now, stale_before),
        )

    def _run_groups(self, group_ids: List[UUID]) -> List[PipelineOutcome]:
        if not group_ids:
            return []

        outcomes: List[PipelineOutcome] = []
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(group_ids)),
            thread_name_prefix="sweep-worker",
        ) as pool:
            # Copy the context so worker log lines carry the sweep id
            futures = {
                pool.submit(contextvars.copy_context().run, self.orchestrator.run_group, group_id): group_id
                for group_id in group_ids
            }
            for future in as_completed(futures):
                group_id = futures[future]
                try:
                    outcomes.append(future.result())
                except Exception as e:
                    logger.error(
                        f"Pipeline for group {group_id} crashed: {e}",
                        extra={"group_id": str(group_id)},
                        exc_info=True,
                    )
                    outcomes.append(PipelineOutcome(
                        group_id=group_id, result=PipelineResult.ERROR, error=str(e)
                    ))
        return outcomes

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background timer (interval ticks plus daily safety net)."""
        with self._state_lock:
            if self._timer_thread is not None and self._timer_thread.is_alive():
                return
            self._stop_event.clear()
            self.orchestrator.reset_stop()
            self._timer_thread = threading.Thread(
                target=self._timer_loop, name="sweep-timer", daemon=True
            )
            self._timer_thread.start()
        logger.info(
            f"Expiry sweep scheduler started (every {self.interval_seconds}s, "
            f"safety net at {self.safety_net_hour_utc:02d}:00 UTC)"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the timer and wait for the in-flight sweep.

        Running pipelines finish their current stage; their progress is
        durable, so the next start resumes them.
        """
        self._stop_event.set()
        self.orchestrator.request_stop()

        with self._state_lock:
            timer = self._timer_thread
            self._timer_thread = None

        if timer is not None:
            timer.join(timeout)
        self.wait_for_sweeps(timeout)
        logger.info("Expiry sweep scheduler stopped")

    def _timer_loop(self) -> None:
        next_safety_net = next_safety_net_run(self.deps.clock.now(), self.safety_net_hour_utc)
        while not self._stop_event.wait(self.interval_seconds):
            now = self.deps.clock.now()
            if now >= next_safety_net:
                next_safety_net = next_safety_net_run(now, self.safety_net_hour_utc)
                self.launch(SweepTrigger.SAFETY_NET)
            else:
                self.launch(SweepTrigger.INTERVAL)

    def launch(self, trigger: str = SweepTrigger.MANUAL) -> bool:
        """Start sweep_once on a runner thread and return at once.

        Returns:
            False if a sweep is already in flight and nothing was started
        """
        if self.sweep_in_progress:
            sweeps_total.labels(trigger=trigger, outcome="skipped").inc()
            logger.info(f"Sweep ({trigger}) skipped, sweep in progress")
            return False

        runner = threading.Thread(
            target=self.sweep_once, args=(trigger,), name=f"sweep-{trigger}"
        )
        with self._state_lock:
            self._runner_threads = [t for t in self._runner_threads if t.is_alive()]
            self._runner_threads.append(runner)
        runner.start()
        return True

    def wait_for_sweeps(self, timeout: Optional[float] = None) -> None:
        """Join the runner threads started so far."""
        with self._state_lock:
            runners = list(self._runner_threads)
        for runner in runners:
            runner.join(timeout)
