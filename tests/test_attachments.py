"""Tests for report_dispatch/distribution/attachments.py."""
from __future__ import annotations

import logging
from unittest.mock import MagicMock
from uuid import uuid4

from report_dispatch.core.errors import DocumentAccessError
from report_dispatch.distribution.attachments import AttachmentResolver


def _refs(*cards) -> list[dict]:
    return [
        {"report_card_id": str(card.id), "student_id": str(card.student_id), "student_name": name}
        for name, card in cards
    ]


def test_presigned_and_direct_urls(db_session, directory, make_entry):
    store = MagicMock()
    store.get_time_limited_access.return_value = "https://s3.test/alice?sig"
    entry = make_entry(attachments=_refs(("Alice Otieno", directory.cards["Alice"]),
                                         ("Brian Otieno", directory.cards["Brian"])))

    resolved = AttachmentResolver(db_session, store, ttl_seconds=600).resolve(entry)

    assert [(a.filename, a.location) for a in resolved] == [
        ("alice-2025.pdf", "https://s3.test/alice?sig"),
        ("report-card-Brian Otieno.pdf", "https://files.example.com/brian.pdf"),
    ]
    store.get_time_limited_access.assert_called_once_with("report-cards/2025/alice.pdf", 600)


def test_unresolvable_references_skipped(db_session, directory, make_entry, caplog):
    store = MagicMock()
    store.get_time_limited_access.side_effect = DocumentAccessError("bucket unavailable")
    entry = make_entry(attachments=[
        *_refs(("Alice Otieno", directory.cards["Alice"]), ("David Otieno", directory.cards["David"])),
        {"report_card_id": str(uuid4()), "student_name": "Ghost"},
    ])

    with caplog.at_level(logging.WARNING):
        resolved = AttachmentResolver(db_session, store).resolve(entry)

    assert resolved == []
    assert caplog.text.count("skipping") == 2
