"""Queue entry store: the outbound email queue and its state transitions.

pending/queued -> processing -> sent | failed | bounced
pending/queued -> cancelled
failed (budget left) -> cancelled    (job cancelled)
failed (budget left) -> processing   (worker retry)
failed (budget left) -> queued       (operator retry)

All methods flush; committing is the caller's job.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from report_dispatch.core.constants import (
    CANCELLABLE_QUEUE_STATUSES,
    DUE_QUEUE_STATUSES,
    OPEN_QUEUE_STATUSES,
    QueueStatus,
)
from report_dispatch.core.errors import InvalidState
from report_dispatch.db.models import EmailQueueEntry
from report_dispatch.db.repositories import EmailQueueRepository
from report_dispatch.db.time import utcnow
from report_dispatch.distribution.retry import plan_failure

logger = logging.getLogger(__name__)

_CLAIMABLE = DUE_QUEUE_STATUSES | {QueueStatus.FAILED.value}


class QueueEntryStore:
    """Create, select, and transition ``EmailQueueEntry`` rows."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.repo = EmailQueueRepository(db_session)

    # -- create -------------------------------------------------------------

    def create_many(self, rows: Sequence[dict]) -> list[EmailQueueEntry]:
        return self.repo.create_many(rows)

    def get(self, entry_id: UUID) -> EmailQueueEntry | None:
        return self.repo.get(entry_id)

    # -- selection ----------------------------------------------------------

    def fetch_due_for_delivery(self, limit: int) -> list[EmailQueueEntry]:
        if limit <= 0:
            return []
        return self.repo.due_for_delivery(limit)

    def fetch_due_for_retry(
        self,
        limit: int,
        now: datetime | None = None,
    ) -> list[EmailQueueEntry]:
        if limit <= 0:
            return []
        return self.repo.due_for_retry(limit, now or utcnow())

    # -- transitions --------------------------------------------------------

    def mark_processing(self, entry: EmailQueueEntry) -> bool:
        """Claim *entry* for this worker; ``False`` if someone else owns it."""
        claimed = self.repo.claim(entry, _CLAIMABLE)
        if not claimed:
            logger.info("Queue entry %s already claimed (status=%s)", entry.id, entry.status)
        return claimed

    def mark_sent(
        self,
        entry: EmailQueueEntry,
        message_id: str | None,
        provider_response: dict | None = None,
        now: datetime | None = None,
    ) -> EmailQueueEntry:
        return self.repo.update(
            entry,
            status=QueueStatus.SENT.value,
            sent_at=now or utcnow(),
            message_id=message_id,
            provider_response=provider_response or {},
            next_retry_at=None,
            error_message=None,
        )

    def mark_failed(
        self,
        entry: EmailQueueEntry,
        error_message: str,
        now: datetime | None = None,
    ) -> EmailQueueEntry:
        """Record a transient failure and schedule the next attempt."""
        now = now or utcnow()
        plan = plan_failure(entry.retry_count, entry.max_retries, now)
        if plan.terminal:
            logger.warning(
                "Queue entry %s failed permanently after %d attempts", entry.id, plan.retry_count
            )
        return self.repo.update(
            entry,
            status=QueueStatus.FAILED.value,
            error_message=error_message,
            retry_count=plan.retry_count,
            last_retry_at=now,
            next_retry_at=plan.next_retry_at,
        )

    def mark_bounced(self, entry: EmailQueueEntry, reason: str) -> EmailQueueEntry:
        """Record a permanent rejection; never retried."""
        return self.repo.update(
            entry,
            status=QueueStatus.BOUNCED.value,
            error_message=reason,
            next_retry_at=None,
        )

    def cancel(self, entry: EmailQueueEntry) -> EmailQueueEntry:
        if entry.status not in CANCELLABLE_QUEUE_STATUSES:
            raise InvalidState(
                f"Cannot cancel queue entry in status {entry.status!r}; "
                f"must be one of {sorted(CANCELLABLE_QUEUE_STATUSES)}"
            )
        return self.repo.update(entry, status=QueueStatus.CANCELLED.value)

    def cancel_pending_for_job(self, batch_job_id: UUID) -> int:
        """Cancel every undelivered entry of a job, including failed ones still due a retry."""
        entries = self.repo.for_job(batch_job_id, CANCELLABLE_QUEUE_STATUSES)
        for entry in entries:
            self.cancel(entry)
        retryable = self.repo.retryable_for_job(batch_job_id)
        for entry in retryable:
            self.repo.update(entry, status=QueueStatus.CANCELLED.value, next_retry_at=None)
        return len(entries) + len(retryable)

    def retryable_for_job(self, batch_job_id: UUID) -> list[EmailQueueEntry]:
        return self.repo.retryable_for_job(batch_job_id)

    def requeue(self, entries: Sequence[EmailQueueEntry]) -> int:
        for entry in entries:
            if entry.status != QueueStatus.FAILED.value or entry.retry_count >= entry.max_retries:
                raise InvalidState(f"Queue entry {entry.id} is not retryable")
            self.repo.update(entry, status=QueueStatus.QUEUED.value, next_retry_at=None)
        return len(entries)

    # -- aggregates ---------------------------------------------------------

    def job_summary(self, batch_job_id: UUID) -> dict[str, int]:
        """Entry counts per status for a job, plus ``total``."""
        counts = self.repo.status_counts(batch_job_id)
        summary = {status.value: counts.get(status.value, 0) for status in QueueStatus}
        summary["total"] = sum(counts.values())
        return summary

    def has_open_entries(self, batch_job_id: UUID) -> bool:
        summary = self.job_summary(batch_job_id)
        return any(summary[status] for status in OPEN_QUEUE_STATUSES)

    def distribution_stats(self, class_section_id: UUID, academic_year_id: UUID) -> dict:
        entries = self.repo.for_scope(class_section_id, academic_year_id)
        sent_times = [e.sent_at for e in entries if e.sent_at is not None]
        return {
            "total_emails": len(entries),
            "unique_recipients": len({e.recipient_email.lower() for e in entries}),
            "sent": sum(1 for e in entries if e.status == QueueStatus.SENT.value),
            "failed": sum(1 for e in entries if e.status == QueueStatus.FAILED.value),
            "bounced": sum(1 for e in entries if e.status == QueueStatus.BOUNCED.value),
            "pending": sum(1 for e in entries if e.status in OPEN_QUEUE_STATUSES),
            "last_sent_at": max(sent_times) if sent_times else None,
        }
