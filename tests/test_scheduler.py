"""Tests for report_dispatch/distribution/scheduler.py.

APScheduler is replaced by a MagicMock; worker runs use a stub worker or
the real worker against the in-memory database.
"""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select

from report_dispatch.core.constants import BatchJobStatus, QueueStatus
from report_dispatch.core.errors import InvalidArgument
from report_dispatch.core.settings import Settings
from report_dispatch.db.models import BatchJob, EmailQueueEntry
from report_dispatch.distribution.attachments import AttachmentResolver
from report_dispatch.distribution.scheduler import (
    CLEANUP_JOB_ID,
    DISPATCH_JOB_ID,
    DispatchScheduler,
)
from report_dispatch.distribution.worker import DispatchWorker, RunResult
from report_dispatch.notification.mail_transport import SendResult


def _settings(**overrides) -> Settings:
    values = {
        "DAILY_EMAIL_LIMIT": 50,
        "EMAIL_BATCH_SIZE": 10,
        "EMAIL_QUEUE_CRON": "0 6 * * *",
        "EMAIL_QUEUE_TIMEZONE": "Africa/Nairobi",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class StubWorker:
    """Reports ``processed = min(size, backlog)`` and drains the backlog."""

    def __init__(self, backlog: dict, calls: list):
        self.backlog = backlog
        self.calls = calls

    def run_once(self, batch_size: int = 10) -> RunResult:
        self.calls.append(batch_size)
        processed = min(batch_size, self.backlog["n"])
        self.backlog["n"] -= processed
        return RunResult(processed=processed, sent=processed)


def _stub_scheduler(session_factory, backlog: int, clock=None, **overrides):
    state, calls = {"n": backlog}, []
    scheduler = DispatchScheduler(
        lambda db: StubWorker(state, calls),
        _settings(**overrides),
        session_factory=session_factory,
        scheduler=MagicMock(),
        **({"clock": clock} if clock else {}),
    )
    return scheduler, state, calls


# ===========================================================================
# Single flight
# ===========================================================================

class TestSingleFlight:
    def test_concurrent_trigger_reports_already_running(self, session_factory):
        entered, release = threading.Event(), threading.Event()

        class BlockingWorker:
            def run_once(self, batch_size=10):
                entered.set()
                release.wait(timeout=5)
                return RunResult(processed=1, sent=1)

        scheduler = DispatchScheduler(
            lambda db: BlockingWorker(), _settings(), session_factory=session_factory, scheduler=MagicMock()
        )
        results = []
        thread = threading.Thread(target=lambda: results.append(scheduler.trigger()))
        thread.start()
        assert entered.wait(timeout=5)

        second = scheduler.trigger()

        assert second.already_running is True
        assert second.message == "Processor already running"
        assert second.result.processed == 0
        assert scheduler.run_scheduled() is None

        release.set()
        thread.join(timeout=5)
        assert results[0].already_running is False
        assert results[0].result.processed == 1
        assert scheduler.is_running is False

    def test_lock_released_after_error(self, session_factory):
        class BrokenWorker:
            def run_once(self, batch_size=10):
                raise RuntimeError("database unavailable")

        scheduler = DispatchScheduler(
            lambda db: BrokenWorker(), _settings(), session_factory=session_factory, scheduler=MagicMock()
        )

        with pytest.raises(RuntimeError):
            scheduler.trigger()
        assert scheduler.is_running is False
        assert scheduler.run_scheduled() is None
        assert scheduler.is_running is False

    def test_invalid_batch_size(self, session_factory):
        scheduler, _, _ = _stub_scheduler(session_factory, 0)
        with pytest.raises(InvalidArgument):
            scheduler.trigger(0)


# ===========================================================================
# Daily ceiling
# ===========================================================================

class TestDailyCeiling:
    def test_scheduled_run_stops_at_ceiling(self, session_factory):
        scheduler, state, calls = _stub_scheduler(session_factory, 100, DAILY_EMAIL_LIMIT=25)

        result = scheduler.run_scheduled()

        assert calls == [10, 10, 5]
        assert result.processed == 25
        assert state["n"] == 75
        assert scheduler.remaining_today() == 0
        assert scheduler.run_scheduled().processed == 0

    def test_scheduled_run_stops_when_queue_drains(self, session_factory):
        scheduler, _, calls = _stub_scheduler(session_factory, 13)

        result = scheduler.run_scheduled()

        assert calls == [10, 10]
        assert result.processed == 13
        assert scheduler.sent_today() == 13

    def test_manual_runs_count_toward_ceiling_but_are_not_capped(self, session_factory):
        scheduler, _, calls = _stub_scheduler(session_factory, 100, DAILY_EMAIL_LIMIT=15)

        scheduler.trigger()
        scheduler.trigger()

        assert calls == [10, 10]
        assert scheduler.sent_today() == 20
        assert scheduler.run_scheduled().processed == 0

    def test_tally_resets_on_new_local_day(self, session_factory):
        now = {"t": datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc)}  # 23:00 in Nairobi
        scheduler, _, _ = _stub_scheduler(
            session_factory, 100, clock=lambda: now["t"], DAILY_EMAIL_LIMIT=10
        )

        scheduler.run_scheduled()
        assert scheduler.remaining_today() == 0

        now["t"] += timedelta(hours=1, minutes=30)  # 00:30 next day in Nairobi
        assert scheduler.remaining_today() == 10


# ===========================================================================
# Lifecycle
# ===========================================================================

class TestLifecycle:
    def test_start_registers_cron_and_cleanup_jobs(self, session_factory):
        scheduler, _, _ = _stub_scheduler(session_factory, 0)

        scheduler.start()

        apscheduler = scheduler.scheduler
        kwargs = {c.kwargs["id"]: c.kwargs for c in apscheduler.add_job.call_args_list}
        assert set(kwargs) == {DISPATCH_JOB_ID, CLEANUP_JOB_ID}
        dispatch = kwargs[DISPATCH_JOB_ID]
        assert dispatch["func"] == scheduler.run_scheduled
        assert isinstance(dispatch["trigger"], CronTrigger)
        assert dispatch["max_instances"] == 1
        assert dispatch["coalesce"] is True
        apscheduler.start.assert_called_once()

    def test_shutdown(self, session_factory):
        scheduler, _, _ = _stub_scheduler(session_factory, 0)
        scheduler.scheduler.running = True
        scheduler.shutdown()
        scheduler.scheduler.shutdown.assert_called_once_with(wait=True)

    def test_invalid_batch_setting_rejected(self, session_factory):
        with pytest.raises(InvalidArgument):
            DispatchScheduler(lambda db: None, _settings(EMAIL_BATCH_SIZE=0), session_factory=session_factory)


# ===========================================================================
# End to end with the real worker
# ===========================================================================

def test_trigger_runs_real_worker(session_factory, make_job, make_entry, db_session):
    job = make_job(total=2)
    make_entry(job)
    make_entry(job)
    job_id = job.id
    db_session.commit()

    transport = MagicMock()
    transport.send.return_value = SendResult(success=True, message_id="<1@test>")
    store = MagicMock()
    scheduler = DispatchScheduler(
        lambda db: DispatchWorker(db, transport, AttachmentResolver(db, store)),
        _settings(),
        session_factory=session_factory,
        scheduler=MagicMock(),
    )

    outcome = scheduler.trigger(5)

    assert outcome.already_running is False
    assert outcome.as_dict()["sent"] == 2
    assert transport.send.call_count == 2
    db_session.expire_all()
    assert db_session.get(BatchJob, job_id).status == BatchJobStatus.COMPLETED.value
    assert all(
        e.status == QueueStatus.SENT.value for e in db_session.scalars(select(EmailQueueEntry)).all()
    )


def test_cleanup_job_uses_retention(session_factory):
    scheduler, _, _ = _stub_scheduler(session_factory, 0, BATCH_JOB_RETENTION_DAYS=7)
    with patch(
        "report_dispatch.distribution.scheduler.BatchJobTracker.cleanup_old_jobs", return_value=3
    ) as cleanup:
        assert scheduler.cleanup_old_jobs() == 3
    cleanup.assert_called_once_with(7)
