"""Recipient grouper: who receives which report cards.

Pure computation over already-loaded documents and recipient links, so
the same call backs both the preview and the real initiate.  Output is
grouped by recipient address because one recipient may be entitled to
several report cards and must get a single consolidated email.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from uuid import UUID

from report_dispatch.core.constants import RecipientType


@dataclass(frozen=True)
class ScopeDocument:
    """A report card in scope, as supplied by the production subsystem."""

    document_id: UUID
    subject_id: UUID
    subject_name: str
    admission_number: str | None
    status: str


@dataclass(frozen=True)
class Recipient:
    recipient_id: UUID
    name: str
    address: str | None
    kind: RecipientType = RecipientType.SPONSOR


@dataclass(frozen=True)
class RecipientLink:
    """An authorization for *recipient* to receive *subject_id*'s documents."""

    subject_id: UUID
    recipient: Recipient
    active: bool = True


@dataclass
class RecipientGroup:
    recipient: Recipient
    documents: list[ScopeDocument] = field(default_factory=list)

    @property
    def address_key(self) -> str:
        return normalize_address(self.recipient.address or "")


@dataclass
class GroupingResult:
    eligible_documents: list[ScopeDocument]
    groups: list[RecipientGroup]
    unmatched_documents: list[ScopeDocument]

    @property
    def documents_with_recipients(self) -> int:
        return len(self.eligible_documents) - len(self.unmatched_documents)

    @property
    def distinct_recipients(self) -> int:
        return len(self.groups)


def normalize_address(address: str) -> str:
    return address.strip().lower()


def status_predicate(statuses: Iterable[str]) -> Callable[[ScopeDocument], bool]:
    """Eligibility predicate: document status is one of *statuses*."""
    allowed = frozenset(statuses)
    return lambda doc: doc.status in allowed


def _link_order(link: RecipientLink) -> tuple[str, str]:
    return normalize_address(link.recipient.address or ""), str(link.recipient.recipient_id)


def group_by_recipient(
    documents: Sequence[ScopeDocument],
    links: Sequence[RecipientLink],
    is_eligible: Callable[[ScopeDocument], bool],
) -> GroupingResult:
    """Group eligible *documents* by the address of each active recipient.

    A subject with several active recipients yields one group per
    recipient; documents whose subject has no active, addressable
    recipient are returned in ``unmatched_documents``.
    """
    eligible = sorted(
        (doc for doc in documents if is_eligible(doc)),
        key=lambda doc: (doc.subject_name, str(doc.document_id)),
    )

    links_by_subject: dict[UUID, list[RecipientLink]] = {}
    for link in links:
        if not link.active or not link.recipient.address or not link.recipient.address.strip():
            continue
        links_by_subject.setdefault(link.subject_id, []).append(link)

    groups: dict[str, RecipientGroup] = {}
    unmatched: list[ScopeDocument] = []

    for doc in eligible:
        subject_links = links_by_subject.get(doc.subject_id, [])
        if not subject_links:
            unmatched.append(doc)
            continue

        for link in sorted(subject_links, key=_link_order):
            key = normalize_address(link.recipient.address)
            group = groups.get(key)
            if group is None:
                group = groups[key] = RecipientGroup(recipient=link.recipient)
            if all(d.document_id != doc.document_id for d in group.documents):
                group.documents.append(doc)

    return GroupingResult(
        eligible_documents=eligible,
        groups=list(groups.values()),
        unmatched_documents=unmatched,
    )
