"""Distribution orchestrator: preview, initiate, retry, cancel, status.

``initiate`` is the only multi-record write in the engine: the batch job,
one queue entry per recipient group and the audit event are committed
together or not at all.  Without ``confirm=True`` it only returns the
preview, so a mass send always takes two explicit steps.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from uuid import UUID

from sqlalchemy.orm import Session

from report_dispatch.audit.audit_log import get_entity_history, record_event
from report_dispatch.audit.events import (
    EVENT_BATCH_JOB_CANCELLED,
    EVENT_DISTRIBUTION_INITIATED,
    EVENT_DISTRIBUTION_RETRIED,
)
from report_dispatch.core.constants import BatchJobStatus, JobKind, QueueStatus
from report_dispatch.core.errors import InvalidArgument, InvalidState, NoRecipients, NothingToRetry
from report_dispatch.core.settings import Settings
from report_dispatch.db.models import BatchJob
from report_dispatch.distribution.batch_jobs import BatchJobTracker
from report_dispatch.distribution.grouper import (
    GroupingResult,
    RecipientGroup,
    group_by_recipient,
    status_predicate,
)
from report_dispatch.distribution.queue_store import QueueEntryStore
from report_dispatch.distribution.scope import DistributionScope, ScopeSource
from report_dispatch.notification.content import render_group

logger = logging.getLogger(__name__)


@dataclass
class DistributionPreview:
    class_section_id: UUID
    academic_year_id: UUID
    class_section_name: str | None
    academic_year_name: str | None
    grouping: GroupingResult

    @property
    def total_documents(self) -> int:
        return len(self.grouping.eligible_documents)

    @property
    def documents_with_recipients(self) -> int:
        return self.grouping.documents_with_recipients

    @property
    def documents_without_recipients(self) -> int:
        return len(self.grouping.unmatched_documents)

    @property
    def distinct_recipients(self) -> int:
        return self.grouping.distinct_recipients

    @property
    def groups(self) -> list[RecipientGroup]:
        return self.grouping.groups

    def as_dict(self) -> dict:
        return {
            "class_section": {"id": str(self.class_section_id), "name": self.class_section_name},
            "academic_year": {"id": str(self.academic_year_id), "name": self.academic_year_name},
            "summary": {
                "total_documents": self.total_documents,
                "documents_with_recipients": self.documents_with_recipients,
                "documents_without_recipients": self.documents_without_recipients,
                "distinct_recipients": self.distinct_recipients,
            },
            "recipients": [
                {
                    "name": group.recipient.name,
                    "type": group.recipient.kind.value,
                    "documents": [
                        {"report_card_id": str(doc.document_id), "student_name": doc.subject_name}
                        for doc in group.documents
                    ],
                }
                for group in self.groups
            ],
            "without_recipients": [
                {"report_card_id": str(doc.document_id), "student_name": doc.subject_name}
                for doc in self.grouping.unmatched_documents
            ],
        }


@dataclass
class InitiateResult:
    preview: DistributionPreview
    batch_job_id: UUID | None = None
    emails_queued: int = 0
    dry_run: bool = False

    def as_dict(self) -> dict:
        return {
            "batch_job_id": str(self.batch_job_id) if self.batch_job_id else None,
            "emails_queued": self.emails_queued,
            "dry_run": self.dry_run,
            "preview": self.preview.as_dict(),
        }


@dataclass
class RetryResult:
    batch_job_id: UUID
    retried: int
    message: str = ""
    entry_ids: list[UUID] = field(default_factory=list)


class DistributionOrchestrator:
    def __init__(
        self,
        db_session: Session,
        scope_source: ScopeSource,
        settings: Settings,
        template_dir: str | Path | None = None,
    ) -> None:
        self.db = db_session
        self.scope_source = scope_source
        self.settings = settings
        self.template_dir = template_dir
        self.tracker = BatchJobTracker(db_session)
        self.store = QueueEntryStore(db_session)

    # -- preview ------------------------------------------------------------

    def preview(self, scope: DistributionScope) -> DistributionPreview:
        """Read-only summary of who would receive what for *scope*."""
        scope.validate()
        snapshot = self.scope_source.load(scope)
        grouping = group_by_recipient(
            snapshot.documents,
            snapshot.links,
            status_predicate(self.settings.eligible_statuses),
        )
        return DistributionPreview(
            class_section_id=scope.class_section_id,
            academic_year_id=scope.academic_year_id,
            class_section_name=snapshot.class_section_name,
            academic_year_name=snapshot.academic_year_name,
            grouping=grouping,
        )

    # -- initiate -----------------------------------------------------------

    def initiate(
        self,
        scope: DistributionScope,
        initiated_by: str,
        confirm: bool = False,
    ) -> InitiateResult:
        """Queue one consolidated email per distinct recipient address.

        Returns the preview alone (``dry_run=True``) unless *confirm* is set.
        Raises ``NoRecipients`` when nobody in scope can be emailed.
        """
        if not initiated_by:
            raise InvalidArgument("initiated_by must be a non-empty string")

        preview = self.preview(scope)
        if not confirm:
            return InitiateResult(preview=preview, dry_run=True)

        if preview.distinct_recipients == 0:
            raise NoRecipients("No recipients found to distribute report cards to")

        try:
            job = self._create_job(scope, initiated_by, preview)
            entries = self.store.create_many(
                [self._entry_row(job, scope, initiated_by, preview, group) for group in preview.groups]
            )
            record_event(
                self.db,
                EVENT_DISTRIBUTION_INITIATED,
                actor=initiated_by,
                entity_type="batch_job",
                entity_id=str(job.id),
                details={
                    "class_section_id": str(scope.class_section_id),
                    "academic_year_id": str(scope.academic_year_id),
                    "total_emails": len(entries),
                    "total_documents": preview.total_documents,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Distribution initiate failed; nothing was queued")
            raise

        logger.info("Distribution initiated: job %s, %d emails queued", job.id, len(entries))
        return InitiateResult(preview=preview, batch_job_id=job.id, emails_queued=len(entries))

    def _create_job(
        self,
        scope: DistributionScope,
        initiated_by: str,
        preview: DistributionPreview,
    ) -> BatchJob:
        label = preview.class_section_name or str(scope.class_section_id)
        return self.tracker.create(
            JobKind.REPORT_CARD_DISTRIBUTION,
            f"Report Card Distribution - {label}",
            initiated_by,
            total=preview.distinct_recipients,
            class_section_id=scope.class_section_id,
            academic_year_id=scope.academic_year_id,
            metadata={
                "operation": "email_distribution",
                "total_documents": preview.total_documents,
                "documents_with_recipients": preview.documents_with_recipients,
                "unique_emails": preview.distinct_recipients,
            },
        )

    def _entry_row(
        self,
        job: BatchJob,
        scope: DistributionScope,
        initiated_by: str,
        preview: DistributionPreview,
        group: RecipientGroup,
    ) -> dict:
        message = render_group(
            group,
            academic_year=preview.academic_year_name or "Current",
            school_name=self.settings.school_name,
            template_dir=self.template_dir,
        )
        return {
            "batch_job_id": job.id,
            "recipient_email": group.recipient.address.strip(),
            "recipient_name": group.recipient.name,
            "recipient_type": group.recipient.kind.value,
            "recipient_ref": group.recipient.recipient_id,
            "subject": message.subject,
            "html_body": message.html,
            "text_body": message.text,
            "attachments": [
                {
                    "report_card_id": str(doc.document_id),
                    "student_id": str(doc.subject_id),
                    "student_name": doc.subject_name,
                }
                for doc in group.documents
            ],
            "student_ids": [str(doc.subject_id) for doc in group.documents],
            "report_card_ids": [str(doc.document_id) for doc in group.documents],
            "class_section_id": scope.class_section_id,
            "academic_year_id": scope.academic_year_id,
            "status": QueueStatus.QUEUED.value,
            "priority": self.settings.report_card_priority,
            "retry_count": 0,
            "max_retries": self.settings.email_max_retries,
            "initiated_by": initiated_by,
        }

    # -- retry / cancel -----------------------------------------------------

    def retry_failed(self, job_id: UUID, actor: str = "system") -> RetryResult:
        """Re-queue failed entries of *job_id* that still have retry budget.

        Raises ``NothingToRetry`` when none qualify.
        """
        job = self.tracker.get(job_id)
        if job.status == BatchJobStatus.CANCELLED.value:
            raise InvalidState(f"Cannot retry entries of cancelled job {job_id}")

        entries = self.store.retryable_for_job(job_id)
        if not entries:
            raise NothingToRetry(f"No failed emails eligible for retry in job {job_id}")

        try:
            retried = self.store.requeue(entries)
            record_event(
                self.db,
                EVENT_DISTRIBUTION_RETRIED,
                actor=actor,
                entity_type="batch_job",
                entity_id=str(job_id),
                details={"retried": retried},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("%d failed emails queued for retry in job %s", retried, job_id)
        return RetryResult(
            batch_job_id=job_id,
            retried=retried,
            message=f"{retried} emails queued for retry",
            entry_ids=[entry.id for entry in entries],
        )

    def cancel_job(self, job_id: UUID, actor: str) -> BatchJob:
        """Cancel still-pending entries of *job_id*, then the job itself."""
        job = self.tracker.get(job_id)
        try:
            cancelled = self.store.cancel_pending_for_job(job_id)
            self.tracker.cancel(job)
            record_event(
                self.db,
                EVENT_BATCH_JOB_CANCELLED,
                actor=actor,
                entity_type="batch_job",
                entity_id=str(job_id),
                details={"cancelled_entries": cancelled},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Batch job %s cancelled (%d entries withdrawn)", job_id, cancelled)
        return job

    # -- status -------------------------------------------------------------

    def status(self, job_id: UUID) -> dict:
        job = self.tracker.get(job_id)
        return {
            "job": self.tracker.format_status(job),
            "entries": self.store.job_summary(job_id),
            "history": [
                {
                    "event_type": event.event_type,
                    "actor": event.actor,
                    "timestamp": event.timestamp,
                    "details": event.details,
                }
                for event in get_entity_history(self.db, "batch_job", str(job_id))
            ],
        }

    def scope_status(self, scope: DistributionScope, limit: int = 5) -> dict:
        scope.validate()
        stats = self.store.distribution_stats(scope.class_section_id, scope.academic_year_id)
        jobs = self.tracker.recent_for_scope(scope.class_section_id, scope.academic_year_id, limit=limit)
        return {
            "stats": stats,
            "recent_jobs": [self.tracker.format_status(job) for job in jobs],
        }
