from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from report_dispatch.core.constants import DUE_QUEUE_STATUSES, TERMINAL_JOB_STATUSES, QueueStatus
from report_dispatch.db import models
from report_dispatch.db.time import utcnow

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: UUID) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity


class BatchJobRepository(BaseRepository[models.BatchJob]):
    model = models.BatchJob

    def in_status(
        self,
        statuses: Iterable[str],
        job_type: str | None = None,
    ) -> list[models.BatchJob]:
        stmt = select(models.BatchJob).where(models.BatchJob.status.in_(list(statuses)))
        if job_type is not None:
            stmt = stmt.where(models.BatchJob.job_type == job_type)
        stmt = stmt.order_by(models.BatchJob.created_at.asc())
        return list(self.db.execute(stmt).scalars().all())

    def for_initiator(
        self,
        initiated_by: str,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> tuple[list[models.BatchJob], int]:
        """Return ``(jobs, total)`` for *initiated_by*, newest first."""
        criteria = [models.BatchJob.initiated_by == initiated_by]
        if statuses is not None:
            criteria.append(models.BatchJob.status.in_(list(statuses)))

        total = self.db.execute(
            select(func.count()).select_from(models.BatchJob).where(*criteria)
        ).scalar_one()

        stmt = (
            select(models.BatchJob)
            .where(*criteria)
            .order_by(models.BatchJob.created_at.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all()), total

    def recent_for_scope(
        self,
        class_section_id: UUID,
        academic_year_id: UUID,
        job_type: str,
        limit: int = 5,
    ) -> list[models.BatchJob]:
        stmt = (
            select(models.BatchJob)
            .where(
                models.BatchJob.class_section_id == class_section_id,
                models.BatchJob.academic_year_id == academic_year_id,
                models.BatchJob.job_type == job_type,
            )
            .order_by(models.BatchJob.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete terminal jobs completed before *cutoff*; detach their entries."""
        job_ids = list(
            self.db.execute(
                select(models.BatchJob.id).where(
                    models.BatchJob.status.in_(list(TERMINAL_JOB_STATUSES)),
                    models.BatchJob.completed_at < cutoff,
                )
            ).scalars().all()
        )
        if not job_ids:
            return 0

        self.db.execute(
            update(models.EmailQueueEntry)
            .where(models.EmailQueueEntry.batch_job_id.in_(job_ids))
            .values(batch_job_id=None)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            delete(models.BatchJob)
            .where(models.BatchJob.id.in_(job_ids))
            .execution_options(synchronize_session=False)
        )
        self.db.expire_all()
        return len(job_ids)


class EmailQueueRepository(BaseRepository[models.EmailQueueEntry]):
    model = models.EmailQueueEntry

    def create_many(self, rows: Sequence[dict]) -> list[models.EmailQueueEntry]:
        entries = [models.EmailQueueEntry(**row) for row in rows]
        self.db.add_all(entries)
        self.db.flush()
        return entries

    def due_for_delivery(self, limit: int) -> list[models.EmailQueueEntry]:
        """Pending/queued entries, most urgent first, FIFO within a priority."""
        stmt = (
            select(models.EmailQueueEntry)
            .where(models.EmailQueueEntry.status.in_(list(DUE_QUEUE_STATUSES)))
            .order_by(
                models.EmailQueueEntry.priority.asc(),
                models.EmailQueueEntry.created_at.asc(),
            )
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def due_for_retry(self, limit: int, now: datetime) -> list[models.EmailQueueEntry]:
        """Failed entries with budget left whose backoff has elapsed."""
        stmt = (
            select(models.EmailQueueEntry)
            .where(
                models.EmailQueueEntry.status == QueueStatus.FAILED.value,
                models.EmailQueueEntry.retry_count < models.EmailQueueEntry.max_retries,
                or_(
                    models.EmailQueueEntry.next_retry_at.is_(None),
                    models.EmailQueueEntry.next_retry_at <= now,
                ),
            )
            .order_by(
                models.EmailQueueEntry.priority.asc(),
                models.EmailQueueEntry.created_at.asc(),
            )
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def claim(self, entry: models.EmailQueueEntry, from_statuses: Iterable[str]) -> bool:
        """Move *entry* to ``processing`` only if it is still in *from_statuses*.

        Single conditional UPDATE; exactly one concurrent caller can win.
        """
        result = self.db.execute(
            update(models.EmailQueueEntry)
            .where(
                models.EmailQueueEntry.id == entry.id,
                models.EmailQueueEntry.status.in_(list(from_statuses)),
            )
            .values(
                status=QueueStatus.PROCESSING.value,
                next_retry_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(entry)
        return result.rowcount == 1

    def for_job(
        self,
        batch_job_id: UUID,
        statuses: Iterable[str] | None = None,
    ) -> list[models.EmailQueueEntry]:
        stmt = select(models.EmailQueueEntry).where(
            models.EmailQueueEntry.batch_job_id == batch_job_id
        )
        if statuses is not None:
            stmt = stmt.where(models.EmailQueueEntry.status.in_(list(statuses)))
        stmt = stmt.order_by(models.EmailQueueEntry.created_at.asc())
        return list(self.db.execute(stmt).scalars().all())

    def retryable_for_job(self, batch_job_id: UUID) -> list[models.EmailQueueEntry]:
        stmt = (
            select(models.EmailQueueEntry)
            .where(
                models.EmailQueueEntry.batch_job_id == batch_job_id,
                models.EmailQueueEntry.status == QueueStatus.FAILED.value,
                models.EmailQueueEntry.retry_count < models.EmailQueueEntry.max_retries,
            )
            .order_by(models.EmailQueueEntry.created_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def status_counts(self, batch_job_id: UUID) -> dict[str, int]:
        rows = self.db.execute(
            select(models.EmailQueueEntry.status, func.count())
            .where(models.EmailQueueEntry.batch_job_id == batch_job_id)
            .group_by(models.EmailQueueEntry.status)
        ).all()
        return {status: count for status, count in rows}

    def for_scope(
        self,
        class_section_id: UUID,
        academic_year_id: UUID,
    ) -> list[models.EmailQueueEntry]:
        stmt = select(models.EmailQueueEntry).where(
            models.EmailQueueEntry.class_section_id == class_section_id,
            models.EmailQueueEntry.academic_year_id == academic_year_id,
        )
        return list(self.db.execute(stmt).scalars().all())
