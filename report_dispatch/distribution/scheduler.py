"""Dispatch scheduler using APScheduler.

Two entry points feed the dispatch worker: the cron schedule and a manual
trigger.  Both go through one try-lock, so at most one worker run is in
flight per process.  A trigger that finds the lock held is skipped, not
queued.

The scheduled run drains the queue in bounded batches until the daily
ceiling is reached or the queue runs dry.  The ceiling is a per-day tally
kept in the scheduler's timezone; manual runs add to the tally but are not
capped by it.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from report_dispatch.core.errors import InvalidArgument
from report_dispatch.core.settings import Settings
from report_dispatch.db.session import session_scope
from report_dispatch.db.time import utcnow
from report_dispatch.distribution.batch_jobs import BatchJobTracker
from report_dispatch.distribution.worker import DispatchWorker, RunResult

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "dispatch_email_queue"
CLEANUP_JOB_ID = "cleanup_batch_jobs"

WorkerFactory = Callable[[Session], DispatchWorker]


@dataclass
class TriggerResult:
    already_running: bool
    result: RunResult = field(default_factory=RunResult)
    message: str | None = None

    def as_dict(self) -> dict:
        payload = self.result.as_dict()
        payload["already_running"] = self.already_running
        if self.message:
            payload["message"] = self.message
        return payload


class DispatchScheduler:
    """Single-flight scheduler for dispatch worker runs."""

    def __init__(
        self,
        worker_factory: WorkerFactory,
        settings: Settings,
        session_factory=None,
        scheduler: BackgroundScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize scheduler.

        Args:
            worker_factory: Builds a ``DispatchWorker`` bound to a session
            settings: Schedule, batch size, ceiling and retention settings
            session_factory: Session factory (default: the app's)
            scheduler: APScheduler instance to register jobs on (optional)
            clock: Returns the current aware datetime
        """
        if settings.email_batch_size < 1:
            raise InvalidArgument(f"EMAIL_BATCH_SIZE must be >= 1, got {settings.email_batch_size}")
        if settings.daily_email_limit < 0:
            raise InvalidArgument(f"DAILY_EMAIL_LIMIT must be >= 0, got {settings.daily_email_limit}")

        self.worker_factory = worker_factory
        self.session_factory = session_factory
        self.batch_size = settings.email_batch_size
        self.daily_limit = settings.daily_email_limit
        self.cron = settings.email_queue_cron
        self.timezone = ZoneInfo(settings.email_queue_timezone)
        self.retention_days = settings.batch_job_retention_days
        self.clock = clock
        self.scheduler = scheduler or BackgroundScheduler(timezone=self.timezone)

        self._lock = threading.Lock()
        self._tally_day: date | None = None
        self._tally = 0

    # -- single flight ------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def trigger(self, batch_size: int | None = None) -> TriggerResult:
        """Run one worker batch now, unless a run is already in flight.

        Store errors propagate; the lock is released either way.
        """
        size = self.batch_size if batch_size is None else batch_size
        if size < 1:
            raise InvalidArgument(f"batch_size must be >= 1, got {size}")

        if not self._lock.acquire(blocking=False):
            logger.info("Manual dispatch skipped: processor already running")
            return TriggerResult(already_running=True, message="Processor already running")
        try:
            result = self._run_batch(size)
        finally:
            self._lock.release()
        return TriggerResult(already_running=False, result=result)

    def run_scheduled(self) -> RunResult | None:
        """Cron entry point: drain the queue up to today's remaining ceiling."""
        if not self._lock.acquire(blocking=False):
            logger.info("Scheduled dispatch skipped: processor already running")
            return None
        try:
            return self._drain()
        except Exception:
            logger.exception("Scheduled dispatch run failed")
            return None
        finally:
            self._lock.release()

    def _drain(self) -> RunResult:
        total = RunResult()
        while True:
            remaining = self.remaining_today()
            if remaining <= 0:
                logger.info("Daily email limit of %d reached", self.daily_limit)
                break
            size = min(self.batch_size, remaining)
            result = self._run_batch(size)
            total.merge(result)
            if result.processed == 0 or result.processed < size:
                break
        logger.info(
            "Scheduled dispatch finished: %d processed, %d sent, %d failed",
            total.processed, total.sent, total.failed,
        )
        return total

    def _run_batch(self, size: int) -> RunResult:
        with session_scope(self.session_factory) as db:
            result = self.worker_factory(db).run_once(size)
        self._count(result.processed)
        return result

    # -- daily ceiling ------------------------------------------------------

    def _today(self) -> date:
        return self.clock().astimezone(self.timezone).date()

    def _count(self, processed: int) -> None:
        today = self._today()
        if self._tally_day != today:
            self._tally_day = today
            self._tally = 0
        self._tally += processed

    def sent_today(self) -> int:
        if self._tally_day != self._today():
            return 0
        return self._tally

    def remaining_today(self) -> int:
        return max(self.daily_limit - self.sent_today(), 0)

    # -- maintenance --------------------------------------------------------

    def cleanup_old_jobs(self) -> int:
        with session_scope(self.session_factory) as db:
            deleted = BatchJobTracker(db).cleanup_old_jobs(self.retention_days)
            db.commit()
        return deleted

    def _run_cleanup(self) -> None:
        try:
            self.cleanup_old_jobs()
        except Exception:
            logger.exception("Batch job cleanup failed")

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        self.scheduler.add_job(
            func=self.run_scheduled,
            trigger=CronTrigger.from_crontab(self.cron, timezone=self.timezone),
            id=DISPATCH_JOB_ID,
            name="Process email queue",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True,
        )
        self.scheduler.add_job(
            func=self._run_cleanup,
            trigger=CronTrigger(hour=3, minute=0, timezone=self.timezone),
            id=CLEANUP_JOB_ID,
            name="Clean up old batch jobs",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Dispatch scheduler started: %r (%s)", self.cron, self.timezone.key)

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("Dispatch scheduler stopped")
