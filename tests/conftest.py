from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from report_dispatch.core.constants import BatchJobStatus, JobKind, QueueStatus
from report_dispatch.core.settings import Settings
from report_dispatch.db.base import Base
from report_dispatch.db.models import (
    AcademicYear,
    AcademicYearEnrollment,
    BatchJob,
    ClassSection,
    EmailQueueEntry,
    ReportCard,
    Sponsor,
    Student,
    StudentSponsorMapping,
)
from report_dispatch.db.time import utcnow


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+pysqlite:///:memory:",
        EMAIL_SENDING_ENABLED=True,
        SCHOOL_NAME="Hillside Academy",
        DAILY_EMAIL_LIMIT=50,
        EMAIL_BATCH_SIZE=10,
        EMAIL_QUEUE_TIMEZONE="Africa/Nairobi",
    )


# ---------------------------------------------------------------------------
# Record factories
# ---------------------------------------------------------------------------

@pytest.fixture()
def make_job(db_session):
    def _make(
        status: str = BatchJobStatus.PENDING.value,
        total: int = 3,
        initiated_by: str = "admin-1",
        **kwargs,
    ) -> BatchJob:
        job = BatchJob(
            job_type=JobKind.REPORT_CARD_DISTRIBUTION.value,
            job_name="Report Card Distribution - Form 2A",
            initiated_by=initiated_by,
            status=status,
            total_items=total,
            progress_percent=0.0,
            error_log=[],
            result_summary={},
            **kwargs,
        )
        db_session.add(job)
        db_session.flush()
        return job

    return _make


@pytest.fixture()
def make_entry(db_session):
    base = utcnow() - timedelta(hours=1)
    counter = {"n": 0}

    def _make(
        job: BatchJob | None = None,
        status: str = QueueStatus.QUEUED.value,
        priority: int = 1,
        created_at: datetime | None = None,
        **kwargs,
    ) -> EmailQueueEntry:
        counter["n"] += 1
        n = counter["n"]
        kwargs.setdefault("recipient_email", f"recipient{n}@example.com")
        kwargs.setdefault("attachments", [])
        entry = EmailQueueEntry(
            batch_job_id=job.id if job is not None else None,
            recipient_name=f"Recipient {n}",
            subject=f"Report Card - Student {n} - 2025",
            html_body="<p>Report card</p>",
            text_body="Report card",
            status=status,
            priority=priority,
            created_at=created_at or base + timedelta(seconds=n),
            **kwargs,
        )
        db_session.add(entry)
        db_session.flush()
        return entry

    return _make


# ---------------------------------------------------------------------------
# School directory
# ---------------------------------------------------------------------------

@dataclass
class Directory:
    year: AcademicYear
    section: ClassSection
    students: dict[str, Student]
    cards: dict[str, ReportCard]
    sponsors: dict[str, Sponsor]


@pytest.fixture()
def directory(db_session) -> Directory:
    """Form 2A / 2025.

    Signed/Generated cards: Alice, Brian, Cynthia.  David's card is a draft.
    Jane sponsors Alice and Brian; Peter sponsors Cynthia.  Esther (no card
    in scope) is sponsored by Jane too.  An inactive mapping links Peter to
    Alice.
    """
    year = AcademicYear(year_name="2025")
    section = ClassSection(section_name="Form 2A")
    other_section = ClassSection(section_name="Form 3B")
    db_session.add_all([year, section, other_section])
    db_session.flush()

    students = {
        name: Student(first_name=name, last_name="Otieno", admission_number=f"ADM-{i:03d}")
        for i, name in enumerate(["Alice", "Brian", "Cynthia", "David", "Esther"], start=1)
    }
    db_session.add_all(students.values())
    db_session.flush()

    for name in ("Alice", "Brian", "Cynthia", "David"):
        db_session.add(AcademicYearEnrollment(
            student_id=students[name].id, class_section_id=section.id, academic_year_id=year.id,
        ))
    db_session.add(AcademicYearEnrollment(
        student_id=students["Esther"].id, class_section_id=other_section.id, academic_year_id=year.id,
    ))

    cards = {
        "Alice": ReportCard(student_id=students["Alice"].id, academic_year_id=year.id,
                            status="Signed", s3_key="report-cards/2025/alice.pdf",
                            pdf_filename="alice-2025.pdf"),
        "Brian": ReportCard(student_id=students["Brian"].id, academic_year_id=year.id,
                            status="Generated", pdf_url="https://files.example.com/brian.pdf"),
        "Cynthia": ReportCard(student_id=students["Cynthia"].id, academic_year_id=year.id,
                              status="Signed", s3_key="report-cards/2025/cynthia.pdf"),
        "David": ReportCard(student_id=students["David"].id, academic_year_id=year.id,
                            status="Draft"),
        "Esther": ReportCard(student_id=students["Esther"].id, academic_year_id=year.id,
                             status="Signed", s3_key="report-cards/2025/esther.pdf"),
    }
    db_session.add_all(cards.values())

    sponsors = {
        "Jane": Sponsor(name="Jane Wanjiku", email="jane@example.com"),
        "Peter": Sponsor(name="Peter Kamau", email="peter@example.com"),
    }
    db_session.add_all(sponsors.values())
    db_session.flush()

    db_session.add_all([
        StudentSponsorMapping(student_id=students["Alice"].id, sponsor_id=sponsors["Jane"].id),
        StudentSponsorMapping(student_id=students["Brian"].id, sponsor_id=sponsors["Jane"].id),
        StudentSponsorMapping(student_id=students["Cynthia"].id, sponsor_id=sponsors["Peter"].id),
        StudentSponsorMapping(student_id=students["Esther"].id, sponsor_id=sponsors["Jane"].id),
        StudentSponsorMapping(student_id=students["Alice"].id, sponsor_id=sponsors["Peter"].id,
                              status="inactive"),
    ])
    db_session.commit()
    return Directory(year=year, section=section, students=students, cards=cards, sponsors=sponsors)
