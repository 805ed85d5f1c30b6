from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Float, ForeignKey, Index, Integer, JSON, String, Text, text as sql_text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from report_dispatch.core.constants import DEFAULT_MAX_RETRIES, DEFAULT_PRIORITY
from report_dispatch.db.base import Base
from report_dispatch.db.time import utcnow
from report_dispatch.db.types import UTCDateTime


class BatchJob(Base):
    """Aggregate record of one distribution run.

    Counters are maintained by the dispatch worker after each delivery
    outcome; ``total_items`` is fixed when the job is created.
    """

    __tablename__ = "batch_jobs"
    __table_args__ = (Index("ix_batch_jobs_status", "status"),)

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False)
    job_name: Mapped[str] = mapped_column(String(255), nullable=False)
    class_section_id: Mapped[UUID | None] = mapped_column(nullable=True)
    academic_year_id: Mapped[UUID | None] = mapped_column(nullable=True)
    initiated_by: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", server_default=sql_text("'pending'")
    )
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    estimated_completion: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    result_summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_log: Mapped[list | None] = mapped_column(JSON, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    entries: Mapped[list[EmailQueueEntry]] = relationship(back_populates="batch_job")


class EmailQueueEntry(Base):
    """One outbound message to one recipient.

    Attachments are references (``report_card_id``) resolved to
    time-limited URLs at send time; bytes are never stored here.
    """

    __tablename__ = "email_queue"
    __table_args__ = (
        Index("ix_email_queue_status_priority_created", "status", "priority", "created_at"),
        Index("ix_email_queue_batch_job_id", "batch_job_id"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    batch_job_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("batch_jobs.id", ondelete="SET NULL"), nullable=True
    )
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default="sponsor", server_default=sql_text("'sponsor'")
    )
    recipient_ref: Mapped[UUID | None] = mapped_column(nullable=True)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    html_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    text_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    attachments: Mapped[list | None] = mapped_column(JSON, nullable=True)
    student_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    report_card_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    class_section_id: Mapped[UUID | None] = mapped_column(nullable=True)
    academic_year_id: Mapped[UUID | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", server_default=sql_text("'pending'")
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_RETRIES)
    last_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    initiated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    batch_job: Mapped[BatchJob | None] = relationship(back_populates="entries")


class AuditEvent(Base):
    """Append-only audit log of operator-visible distribution events."""

    __tablename__ = "audit_events"

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(128), nullable=False, default="system", server_default=sql_text("'system'"),
    )
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Directory tables
#
# Owned by the school records and report card production subsystems.  Only
# the columns the distribution engine reads are mapped here.
# ---------------------------------------------------------------------------

class AcademicYear(Base):
    __tablename__ = "academic_years"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    year_name: Mapped[str] = mapped_column(String(64), nullable=False)


class ClassSection(Base):
    __tablename__ = "class_sections"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    section_name: Mapped[str] = mapped_column(String(128), nullable=False)


class Student(Base):
    __tablename__ = "students"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    admission_number: Mapped[str | None] = mapped_column(String(64), nullable=True)


class AcademicYearEnrollment(Base):
    __tablename__ = "academic_year_enrollments"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    student_id: Mapped[UUID] = mapped_column(ForeignKey("students.id"), nullable=False)
    class_section_id: Mapped[UUID] = mapped_column(ForeignKey("class_sections.id"), nullable=False)
    academic_year_id: Mapped[UUID] = mapped_column(ForeignKey("academic_years.id"), nullable=False)


class ReportCard(Base):
    __tablename__ = "report_cards"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    student_id: Mapped[UUID] = mapped_column(ForeignKey("students.id"), nullable=False)
    academic_year_id: Mapped[UUID] = mapped_column(ForeignKey("academic_years.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Draft")
    s3_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    pdf_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    pdf_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)

    student: Mapped[Student] = relationship()


class Sponsor(Base):
    __tablename__ = "sponsors"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)


class StudentSponsorMapping(Base):
    __tablename__ = "student_sponsor_mappings"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    student_id: Mapped[UUID] = mapped_column(ForeignKey("students.id"), nullable=False)
    sponsor_id: Mapped[UUID] = mapped_column(ForeignKey("sponsors.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    recipient_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default="sponsor", server_default=sql_text("'sponsor'")
    )

    sponsor: Mapped[Sponsor] = relationship()
