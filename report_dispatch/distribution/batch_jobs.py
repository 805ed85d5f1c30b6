"""Batch job tracker: bookkeeping for one distribution run.

State machine::

    pending -> in_progress -> completed | failed
    pending | in_progress -> cancelled

Terminal states are final.  The tracker never initiates delivery; the
dispatch worker pushes outcome counts into it.  All methods flush but do
**not** commit.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from report_dispatch.core.constants import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    BatchJobStatus,
    JobKind,
)
from report_dispatch.core.errors import InvalidArgument, InvalidState, JobNotFound
from report_dispatch.db.models import BatchJob
from report_dispatch.db.repositories import BatchJobRepository
from report_dispatch.db.time import utcnow

logger = logging.getLogger(__name__)


def progress_percent(processed: int, total: int) -> float:
    """Percentage with two decimals, rounding halves up; 0 when *total* is 0."""
    if total <= 0:
        return 0.0
    return math.floor(processed / total * 10000 + 0.5) / 100


def estimate_completion(
    started_at: datetime | None,
    processed: int,
    total: int,
    now: datetime,
) -> datetime | None:
    """Linear projection: ``now + elapsed / processed * remaining``."""
    if processed <= 0 or started_at is None:
        return None
    per_item = (now - started_at) / processed
    return now + per_item * max(total - processed, 0)


def _format_duration(duration: timedelta | None) -> str | None:
    if duration is None:
        return None
    seconds = int(duration.total_seconds())
    return f"{seconds // 60}m {seconds % 60}s"


class BatchJobTracker:
    """Stateless state-machine operations over ``BatchJob`` records."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.repo = BatchJobRepository(db_session)

    # -- create / read ------------------------------------------------------

    def create(
        self,
        kind: JobKind,
        label: str,
        initiated_by: str,
        total: int,
        class_section_id: UUID | None = None,
        academic_year_id: UUID | None = None,
        metadata: dict | None = None,
    ) -> BatchJob:
        if total < 0:
            raise InvalidArgument(f"total must be >= 0, got {total}")
        if not initiated_by:
            raise InvalidArgument("initiated_by must be a non-empty string")

        job = self.repo.create(
            job_type=JobKind(kind).value,
            job_name=label,
            initiated_by=initiated_by,
            class_section_id=class_section_id,
            academic_year_id=academic_year_id,
            total_items=total,
            status=BatchJobStatus.PENDING.value,
            progress_percent=0.0,
            result_summary={},
            error_log=[],
            metadata_json=metadata or {},
        )
        logger.info("Batch job %s created (%s, total=%d)", job.id, job.job_type, total)
        return job

    def get(self, job_id: UUID) -> BatchJob:
        job = self.repo.get(job_id)
        if job is None:
            raise JobNotFound(f"BatchJob {job_id} not found")
        return job

    def active_jobs(self, initiated_by: str) -> list[BatchJob]:
        jobs, _ = self.repo.for_initiator(initiated_by, statuses=ACTIVE_JOB_STATUSES)
        return jobs

    def job_history(
        self,
        initiated_by: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[BatchJob], int]:
        return self.repo.for_initiator(initiated_by, limit=limit, offset=offset)

    def in_progress_jobs(self, kind: JobKind | None = None) -> list[BatchJob]:
        return self.repo.in_status(
            [BatchJobStatus.IN_PROGRESS.value],
            job_type=JobKind(kind).value if kind is not None else None,
        )

    def unfinished_jobs(self, kind: JobKind | None = None) -> list[BatchJob]:
        """Pending and in-progress jobs, oldest first."""
        return self.repo.in_status(
            sorted(ACTIVE_JOB_STATUSES),
            job_type=JobKind(kind).value if kind is not None else None,
        )

    def recent_for_scope(
        self,
        class_section_id: UUID,
        academic_year_id: UUID,
        limit: int = 5,
    ) -> list[BatchJob]:
        return self.repo.recent_for_scope(
            class_section_id,
            academic_year_id,
            JobKind.REPORT_CARD_DISTRIBUTION.value,
            limit=limit,
        )

    # -- transitions --------------------------------------------------------

    def start(self, job: BatchJob, now: datetime | None = None) -> BatchJob:
        if job.status != BatchJobStatus.PENDING.value:
            raise InvalidState(
                f"Cannot start job in status {job.status!r}; must be pending"
            )
        return self.repo.update(
            job,
            status=BatchJobStatus.IN_PROGRESS.value,
            started_at=now or utcnow(),
        )

    def update_progress(
        self,
        job: BatchJob,
        *,
        successful: int | None = None,
        failed: int | None = None,
        skipped: int | None = None,
        processed: int | None = None,
        error: str | None = None,
        now: datetime | None = None,
    ) -> BatchJob:
        """Overwrite outcome counts with the caller's cumulative values.

        ``processed`` is always ``successful + failed + skipped``; passing a
        different value is rejected.  Status is never changed here.
        """
        now = now or utcnow()
        new_successful = job.successful_items if successful is None else successful
        new_failed = job.failed_items if failed is None else failed
        new_skipped = job.skipped_items if skipped is None else skipped

        for name, value in (
            ("successful", new_successful),
            ("failed", new_failed),
            ("skipped", new_skipped),
        ):
            if value < 0:
                raise InvalidArgument(f"{name} must be >= 0, got {value}")

        new_processed = new_successful + new_failed + new_skipped
        if processed is not None and processed != new_processed:
            raise InvalidArgument(
                f"processed={processed} does not equal successful + failed + skipped "
                f"({new_processed})"
            )

        job.successful_items = new_successful
        job.failed_items = new_failed
        job.skipped_items = new_skipped
        job.processed_items = new_processed
        job.progress_percent = progress_percent(new_processed, job.total_items)
        job.estimated_completion = estimate_completion(
            job.started_at, new_processed, job.total_items, now
        )

        if error:
            job.error_log = [
                *(job.error_log or []),
                {"timestamp": now.isoformat(), "message": error},
            ]

        self.db.flush()
        return job

    def complete(
        self,
        job: BatchJob,
        summary: dict | None = None,
        now: datetime | None = None,
    ) -> BatchJob:
        self._require_active(job, "complete")
        job = self.repo.update(
            job,
            status=BatchJobStatus.COMPLETED.value,
            completed_at=now or utcnow(),
            progress_percent=100.0,
            result_summary=summary or {},
        )
        logger.info(
            "Batch job %s completed: %d/%d successful",
            job.id, job.successful_items, job.total_items,
        )
        return job

    def fail(self, job: BatchJob, message: str, now: datetime | None = None) -> BatchJob:
        self._require_active(job, "fail")
        now = now or utcnow()
        job = self.repo.update(
            job,
            status=BatchJobStatus.FAILED.value,
            completed_at=now,
            error_log=[
                *(job.error_log or []),
                {"timestamp": now.isoformat(), "message": message, "fatal": True},
            ],
        )
        logger.error("Batch job %s failed: %s", job.id, message)
        return job

    def cancel(self, job: BatchJob, now: datetime | None = None) -> BatchJob:
        self._require_active(job, "cancel")
        job = self.repo.update(
            job,
            status=BatchJobStatus.CANCELLED.value,
            completed_at=now or utcnow(),
        )
        logger.info("Batch job %s cancelled", job.id)
        return job

    def _require_active(self, job: BatchJob, action: str) -> None:
        if job.status in TERMINAL_JOB_STATUSES:
            raise InvalidState(f"Cannot {action} job in terminal status {job.status!r}")

    # -- maintenance --------------------------------------------------------

    def cleanup_old_jobs(
        self,
        retention_days: int = 30,
        now: datetime | None = None,
    ) -> int:
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        deleted = self.repo.delete_terminal_before(cutoff)
        if deleted:
            logger.info("Deleted %d batch jobs completed before %s", deleted, cutoff.isoformat())
        return deleted

    # -- presentation -------------------------------------------------------

    def format_status(self, job: BatchJob, now: datetime | None = None) -> dict:
        duration = None
        if job.started_at is not None:
            duration = (job.completed_at or now or utcnow()) - job.started_at
        return {
            "id": str(job.id),
            "type": job.job_type,
            "name": job.job_name,
            "status": job.status,
            "progress": {
                "percent": job.progress_percent,
                "processed": job.processed_items,
                "total": job.total_items,
                "successful": job.successful_items,
                "failed": job.failed_items,
                "skipped": job.skipped_items,
            },
            "timing": {
                "started": job.started_at,
                "completed": job.completed_at,
                "estimated": job.estimated_completion,
                "duration": _format_duration(duration),
            },
            "errors": list(job.error_log or []),
            "results": dict(job.result_summary or {}),
        }
