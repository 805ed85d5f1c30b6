"""Dispatch worker process: runs the email queue on its cron schedule.

Usage:
    report-dispatch-worker          # uses DATABASE_URL etc. from env / .env
"""
from __future__ import annotations

import logging
import signal
import threading
from typing import Any

from report_dispatch.core.logging import setup_logging
from report_dispatch.core.settings import Settings, get_settings
from report_dispatch.distribution.attachments import AttachmentResolver
from report_dispatch.distribution.scheduler import DispatchScheduler
from report_dispatch.distribution.worker import DispatchWorker
from report_dispatch.notification.mail_transport import SmtpMailTransport
from report_dispatch.storage.documents import S3DocumentStore

logger = logging.getLogger(__name__)


def build_scheduler(settings: Settings) -> DispatchScheduler:
    transport = SmtpMailTransport.from_settings(settings)
    store = S3DocumentStore.from_settings(settings)

    def worker_factory(db_session) -> DispatchWorker:
        return DispatchWorker(
            db_session,
            transport,
            AttachmentResolver(db_session, store, settings.attachment_url_ttl_seconds),
        )

    return DispatchScheduler(worker_factory, settings)


def main() -> None:
    setup_logging()
    settings = get_settings()
    if not settings.email_sending_enabled:
        logger.warning("EMAIL_SENDING_ENABLED is false; queue entries will be marked sent without delivery")

    scheduler = build_scheduler(settings)
    stop = threading.Event()

    def shutdown(signum: int, frame: Any) -> None:
        logger.info("Received signal %d, shutting down scheduler...", signum)
        stop.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    scheduler.start()
    try:
        stop.wait()
    finally:
        scheduler.shutdown(wait=True)


if __name__ == "__main__":
    main()
