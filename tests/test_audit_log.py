"""Tests for report_dispatch/audit/audit_log.py."""
from __future__ import annotations

import pytest

from report_dispatch.audit.audit_log import get_entity_history, record_event
from report_dispatch.audit.events import (
    EVENT_BATCH_JOB_CANCELLED,
    EVENT_BATCH_JOB_COMPLETED,
    EVENT_DISTRIBUTION_INITIATED,
    EVENT_DISTRIBUTION_RETRIED,
    VALID_EVENT_TYPES,
)


class TestRecordEvent:
    def test_valid_event_persisted(self, db_session):
        ev = record_event(
            db_session,
            event_type=EVENT_DISTRIBUTION_INITIATED,
            actor="admin-1",
            entity_type="batch_job",
            entity_id="job-1",
            details={"total_emails": 2},
        )
        db_session.commit()

        assert ev.audit_event_id is not None
        assert ev.timestamp is not None
        assert ev.details == {"total_emails": 2}

    def test_invalid_event_type_raises(self, db_session):
        with pytest.raises(ValueError, match="Invalid event_type"):
            record_event(db_session, event_type="bogus", actor="system")

    def test_empty_actor_raises(self, db_session):
        with pytest.raises(ValueError, match="actor"):
            record_event(db_session, event_type=EVENT_BATCH_JOB_COMPLETED, actor="  ")

    def test_not_committed_by_record_event(self, db_session):
        record_event(db_session, event_type=EVENT_BATCH_JOB_CANCELLED, actor="admin-1",
                     entity_type="batch_job", entity_id="job-2")
        db_session.rollback()
        assert get_entity_history(db_session, "batch_job", "job-2") == []


def test_entity_history_in_order(db_session):
    for event_type in (EVENT_DISTRIBUTION_INITIATED, EVENT_DISTRIBUTION_RETRIED, EVENT_BATCH_JOB_COMPLETED):
        record_event(db_session, event_type=event_type, actor="system",
                     entity_type="batch_job", entity_id="job-3")
    record_event(db_session, event_type=EVENT_DISTRIBUTION_INITIATED, actor="system",
                 entity_type="batch_job", entity_id="other")

    history = get_entity_history(db_session, "batch_job", "job-3")

    assert [e.event_type for e in history] == [
        EVENT_DISTRIBUTION_INITIATED,
        EVENT_DISTRIBUTION_RETRIED,
        EVENT_BATCH_JOB_COMPLETED,
    ]


def test_valid_event_types_complete():
    assert VALID_EVENT_TYPES == {
        "distribution_initiated",
        "distribution_retried",
        "batch_job_cancelled",
        "batch_job_completed",
    }
