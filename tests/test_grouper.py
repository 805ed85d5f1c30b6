"""Tests for report_dispatch/distribution/grouper.py."""
from __future__ import annotations

from uuid import uuid4

from report_dispatch.core.constants import RecipientType
from report_dispatch.distribution.grouper import (
    Recipient,
    RecipientLink,
    ScopeDocument,
    group_by_recipient,
    normalize_address,
    status_predicate,
)

ELIGIBLE = status_predicate({"Signed", "Generated"})


def _doc(name: str, status: str = "Signed") -> ScopeDocument:
    return ScopeDocument(
        document_id=uuid4(),
        subject_id=uuid4(),
        subject_name=name,
        admission_number=None,
        status=status,
    )


def _recipient(name: str, address: str | None, kind=RecipientType.SPONSOR) -> Recipient:
    return Recipient(recipient_id=uuid4(), name=name, address=address, kind=kind)


def _link(doc: ScopeDocument, recipient: Recipient, active: bool = True) -> RecipientLink:
    return RecipientLink(subject_id=doc.subject_id, recipient=recipient, active=active)


class TestGroupByRecipient:
    def test_groups_documents_per_recipient_address(self):
        alice, brian, cynthia = _doc("Alice"), _doc("Brian"), _doc("Cynthia")
        jane = _recipient("Jane", "jane@example.com")
        peter = _recipient("Peter", "peter@example.com")

        result = group_by_recipient(
            [alice, brian, cynthia],
            [_link(alice, jane), _link(brian, jane), _link(cynthia, peter)],
            ELIGIBLE,
        )

        assert result.distinct_recipients == 2
        assert result.documents_with_recipients == 3
        by_name = {g.recipient.name: [d.subject_name for d in g.documents] for g in result.groups}
        assert by_name == {"Jane": ["Alice", "Brian"], "Peter": ["Cynthia"]}

    def test_ineligible_documents_excluded(self):
        signed, draft = _doc("Alice"), _doc("David", status="Draft")
        jane = _recipient("Jane", "jane@example.com")

        result = group_by_recipient([signed, draft], [_link(signed, jane), _link(draft, jane)], ELIGIBLE)

        assert [d.subject_name for d in result.eligible_documents] == ["Alice"]
        assert [d.subject_name for d in result.groups[0].documents] == ["Alice"]

    def test_documents_without_active_recipient_are_unmatched(self):
        alice, brian = _doc("Alice"), _doc("Brian")
        jane = _recipient("Jane", "jane@example.com")
        nobody = _recipient("No Email", None)

        result = group_by_recipient(
            [alice, brian],
            [_link(alice, jane, active=False), _link(brian, nobody)],
            ELIGIBLE,
        )

        assert result.groups == []
        assert {d.subject_name for d in result.unmatched_documents} == {"Alice", "Brian"}
        assert result.documents_with_recipients == 0

    def test_address_matching_ignores_case_and_whitespace(self):
        alice, brian = _doc("Alice"), _doc("Brian")
        jane = _recipient("Jane", "jane@example.com")
        jane_again = _recipient("Jane W.", "  JANE@Example.com ")

        result = group_by_recipient([alice, brian], [_link(alice, jane), _link(brian, jane_again)], ELIGIBLE)

        assert result.distinct_recipients == 1
        assert len(result.groups[0].documents) == 2

    def test_subject_with_two_recipients_yields_two_groups(self):
        alice = _doc("Alice")
        jane = _recipient("Jane", "jane@example.com")
        mum = _recipient("Mary", "mary@example.com", kind=RecipientType.PARENT)

        result = group_by_recipient([alice], [_link(alice, jane), _link(alice, mum)], ELIGIBLE)

        assert result.distinct_recipients == 2
        assert all(g.documents == [alice] for g in result.groups)
        assert result.documents_with_recipients == 1

    def test_same_document_listed_once_per_group(self):
        alice = _doc("Alice")
        jane = _recipient("Jane", "jane@example.com")
        jane_dup = _recipient("Jane", "jane@example.com")

        result = group_by_recipient([alice], [_link(alice, jane), _link(alice, jane_dup)], ELIGIBLE)

        assert len(result.groups) == 1
        assert result.groups[0].documents == [alice]

    def test_deterministic_regardless_of_input_order(self):
        docs = [_doc("Cynthia"), _doc("Alice"), _doc("Brian")]
        jane = _recipient("Jane", "jane@example.com")
        peter = _recipient("Peter", "peter@example.com")
        links = [_link(docs[0], peter), _link(docs[1], jane), _link(docs[2], jane)]

        first = group_by_recipient(docs, links, ELIGIBLE)
        second = group_by_recipient(list(reversed(docs)), list(reversed(links)), ELIGIBLE)

        def shape(result):
            return [(g.address_key, [d.document_id for d in g.documents]) for g in result.groups]

        assert shape(first) == shape(second)


def test_normalize_address():
    assert normalize_address("  Jane@Example.COM ") == "jane@example.com"
