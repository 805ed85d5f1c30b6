"""Distribution scope: a class section in an academic year.

``SqlScopeSource`` reads the report cards of every student enrolled in
the scope together with their sponsor mappings.  Eligibility filtering
happens later, in the grouper.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from report_dispatch.core.constants import RecipientType
from report_dispatch.core.errors import InvalidArgument
from report_dispatch.db.models import (
    AcademicYear,
    AcademicYearEnrollment,
    ClassSection,
    ReportCard,
    Sponsor,
    Student,
    StudentSponsorMapping,
)
from report_dispatch.distribution.grouper import Recipient, RecipientLink, ScopeDocument

_ACTIVE_MAPPING_STATUS = "active"


@dataclass(frozen=True)
class DistributionScope:
    class_section_id: UUID
    academic_year_id: UUID

    def validate(self) -> None:
        for name in ("class_section_id", "academic_year_id"):
            value = getattr(self, name)
            if not isinstance(value, UUID):
                raise InvalidArgument(f"{name} must be a UUID, got {value!r}")


@dataclass
class ScopeSnapshot:
    documents: list[ScopeDocument]
    links: list[RecipientLink]
    class_section_name: str | None = None
    academic_year_name: str | None = None


class ScopeSource(Protocol):
    def load(self, scope: DistributionScope) -> ScopeSnapshot: ...


class SqlScopeSource:
    """Load a ``ScopeSnapshot`` from the school directory tables."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def load(self, scope: DistributionScope) -> ScopeSnapshot:
        enrolled = (
            select(AcademicYearEnrollment.student_id)
            .where(
                AcademicYearEnrollment.class_section_id == scope.class_section_id,
                AcademicYearEnrollment.academic_year_id == scope.academic_year_id,
            )
        )
        rows = self.db.execute(
            select(ReportCard, Student)
            .join(Student, ReportCard.student_id == Student.id)
            .where(
                ReportCard.academic_year_id == scope.academic_year_id,
                ReportCard.student_id.in_(enrolled),
            )
            .order_by(ReportCard.id)
        ).all()

        documents = [
            ScopeDocument(
                document_id=card.id,
                subject_id=student.id,
                subject_name=f"{student.first_name} {student.last_name}",
                admission_number=student.admission_number,
                status=card.status,
            )
            for card, student in rows
        ]

        student_ids = {doc.subject_id for doc in documents}
        links: list[RecipientLink] = []
        if student_ids:
            mappings = self.db.execute(
                select(StudentSponsorMapping, Sponsor)
                .join(Sponsor, StudentSponsorMapping.sponsor_id == Sponsor.id)
                .where(
                    StudentSponsorMapping.student_id.in_(student_ids),
                    StudentSponsorMapping.status == _ACTIVE_MAPPING_STATUS,
                )
                .order_by(StudentSponsorMapping.id)
            ).all()
            links = [
                RecipientLink(
                    subject_id=mapping.student_id,
                    recipient=Recipient(
                        recipient_id=sponsor.id,
                        name=sponsor.name,
                        address=sponsor.email,
                        kind=RecipientType(mapping.recipient_type),
                    ),
                )
                for mapping, sponsor in mappings
            ]

        section = self.db.get(ClassSection, scope.class_section_id)
        year = self.db.get(AcademicYear, scope.academic_year_id)
        return ScopeSnapshot(
            documents=documents,
            links=links,
            class_section_name=section.section_name if section else None,
            academic_year_name=year.year_name if year else None,
        )
