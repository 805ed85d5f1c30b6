"""Resolve queue entry attachment references to fetchable locations.

Each reference names a report card.  Stored PDFs get a presigned URL from
the document store; cards with only a ``pdf_url`` use it directly.  A
reference that cannot be resolved is logged and skipped, so the email still
goes out with the remaining attachments.
"""
from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from report_dispatch.core.errors import DocumentAccessError
from report_dispatch.db.models import EmailQueueEntry, ReportCard
from report_dispatch.notification.mail_transport import OutboundAttachment
from report_dispatch.storage.documents import DocumentStore

logger = logging.getLogger(__name__)


class AttachmentResolver:
    def __init__(
        self,
        db_session: Session,
        store: DocumentStore,
        ttl_seconds: int = 3600,
    ) -> None:
        self.db = db_session
        self.store = store
        self.ttl_seconds = ttl_seconds

    def resolve(self, entry: EmailQueueEntry) -> list[OutboundAttachment]:
        resolved: list[OutboundAttachment] = []
        for ref in entry.attachments or []:
            card_id = ref.get("report_card_id")
            card = self.db.get(ReportCard, UUID(card_id)) if card_id else None
            if card is None:
                logger.warning("Entry %s: report card %s not found; skipping", entry.id, card_id)
                continue

            filename = card.pdf_filename or f"report-card-{ref.get('student_name') or card.student_id}.pdf"
            if card.s3_key:
                try:
                    location = self.store.get_time_limited_access(card.s3_key, self.ttl_seconds)
                except DocumentAccessError as exc:
                    logger.warning("Entry %s: no access handle for %s: %s", entry.id, card.id, exc)
                    continue
            elif card.pdf_url:
                location = card.pdf_url
            else:
                logger.warning("Entry %s: report card %s has no stored PDF; skipping", entry.id, card.id)
                continue

            resolved.append(OutboundAttachment(filename=filename, location=location))
        return resolved
