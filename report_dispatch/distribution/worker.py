"""Dispatch worker: drain one bounded slice of the email queue.

Entries are delivered sequentially so the outbound rate against the shared
SMTP relay stays bounded.  Every entry transition is committed as soon as it
happens, which makes a crashed run resumable: delivered entries keep their
terminal state and untouched ones are picked up by the next run.

Per-entry delivery faults are recorded on the entry and never escape
``run_once``; database errors propagate to the caller.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from report_dispatch.audit.audit_log import record_event
from report_dispatch.audit.events import EVENT_BATCH_JOB_COMPLETED
from report_dispatch.core.constants import BatchJobStatus, JobKind, QueueStatus
from report_dispatch.core.errors import DeliveryError, RecipientRejected
from report_dispatch.db.models import EmailQueueEntry
from report_dispatch.distribution.attachments import AttachmentResolver
from report_dispatch.distribution.batch_jobs import BatchJobTracker
from report_dispatch.distribution.queue_store import QueueEntryStore
from report_dispatch.notification.mail_transport import MailTransport, OutboundMessage

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    bounced: int = 0
    errors: list[dict] = field(default_factory=list)

    def merge(self, other: RunResult) -> None:
        self.processed += other.processed
        self.sent += other.sent
        self.failed += other.failed
        self.bounced += other.bounced
        self.errors.extend(other.errors)

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "bounced": self.bounced,
            "errors": list(self.errors),
        }


class DispatchWorker:
    """Deliver due queue entries and keep their batch jobs up to date."""

    def __init__(
        self,
        db_session: Session,
        transport: MailTransport,
        attachments: AttachmentResolver,
    ) -> None:
        self.db = db_session
        self.transport = transport
        self.attachments = attachments
        self.store = QueueEntryStore(db_session)
        self.tracker = BatchJobTracker(db_session)

    # -- run ----------------------------------------------------------------

    def run_once(self, batch_size: int = 10) -> RunResult:
        """Process up to *batch_size* entries; fresh entries before retries."""
        result = RunResult()
        entries = self.store.fetch_due_for_delivery(batch_size)
        if not entries:
            entries = self.store.fetch_due_for_retry(batch_size)

        touched_jobs: set[UUID] = set()
        for entry in entries:
            if not self.store.mark_processing(entry):
                self.db.commit()
                continue
            self.db.commit()

            result.processed += 1
            if entry.batch_job_id is not None:
                touched_jobs.add(entry.batch_job_id)
                self._start_job_if_pending(entry.batch_job_id)

            self._deliver(entry, result)
            self.db.commit()

        for job_id in sorted(touched_jobs, key=str):
            self.refresh_job_progress(job_id)
        self.db.commit()

        self.sweep_completed_jobs()

        if result.processed:
            logger.info(
                "Dispatch run: %d processed, %d sent, %d failed (%d bounced)",
                result.processed, result.sent, result.failed, result.bounced,
            )
        return result

    def _deliver(self, entry: EmailQueueEntry, result: RunResult) -> None:
        try:
            message = OutboundMessage(
                to=entry.recipient_email,
                to_name=entry.recipient_name,
                subject=entry.subject,
                html=entry.html_body,
                text=entry.text_body,
                attachments=self.attachments.resolve(entry),
            )
            outcome = self.transport.send(message)
            if not outcome.success:
                raise DeliveryError(outcome.error or "Email sending failed")
        except RecipientRejected as exc:
            logger.warning("Entry %s bounced: %s", entry.id, exc)
            self.store.mark_bounced(entry, str(exc))
            result.failed += 1
            result.bounced += 1
            result.errors.append({"entry_id": str(entry.id), "error": str(exc), "permanent": True})
            return
        except Exception as exc:  # claimed entry must leave processing
            logger.warning("Entry %s delivery failed: %s", entry.id, exc)
            self.store.mark_failed(entry, str(exc))
            result.failed += 1
            result.errors.append({"entry_id": str(entry.id), "error": str(exc), "permanent": False})
            return

        self.store.mark_sent(entry, outcome.message_id, outcome.provider_response)
        result.sent += 1

    def _start_job_if_pending(self, job_id: UUID) -> None:
        job = self.tracker.get(job_id)
        if job.status == BatchJobStatus.PENDING.value:
            self.tracker.start(job)
            self.db.commit()

    # -- job bookkeeping ----------------------------------------------------

    def refresh_job_progress(self, job_id: UUID) -> None:
        """Push cumulative outcome counts for *job_id* into its tracker record."""
        job = self.tracker.get(job_id)
        summary = self.store.job_summary(job_id)
        self.tracker.update_progress(
            job,
            successful=summary[QueueStatus.SENT.value],
            failed=summary[QueueStatus.FAILED.value] + summary[QueueStatus.BOUNCED.value],
            skipped=summary[QueueStatus.CANCELLED.value],
        )

    def sweep_completed_jobs(self) -> int:
        """Complete pending or in-progress distribution jobs with no open entries left.

        Pending jobs are included so a job whose entries were all cancelled
        before delivery started still reaches a terminal status.
        """
        completed = 0
        for job in self.tracker.unfinished_jobs(JobKind.REPORT_CARD_DISTRIBUTION):
            if self.store.has_open_entries(job.id):
                continue
            summary = self.store.job_summary(job.id)
            self.refresh_job_progress(job.id)
            self.tracker.complete(
                job,
                {
                    "sent": summary[QueueStatus.SENT.value],
                    "failed": summary[QueueStatus.FAILED.value],
                    "bounced": summary[QueueStatus.BOUNCED.value],
                    "cancelled": summary[QueueStatus.CANCELLED.value],
                    "total": summary["total"],
                },
            )
            record_event(
                self.db,
                EVENT_BATCH_JOB_COMPLETED,
                actor="system",
                entity_type="batch_job",
                entity_id=str(job.id),
                details={"sent": summary[QueueStatus.SENT.value], "total": summary["total"]},
            )
            self.db.commit()
            completed += 1
        return completed
