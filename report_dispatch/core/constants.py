"""Status vocabularies for batch jobs and queue entries."""
from __future__ import annotations

from enum import Enum


class BatchJobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueueStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    BOUNCED = "bounced"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    REPORT_CARD_DISTRIBUTION = "report_card_distribution"


class RecipientType(str, Enum):
    SPONSOR = "sponsor"
    PARENT = "parent"
    GUARDIAN = "guardian"
    STUDENT = "student"
    OTHER = "other"


TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({
    BatchJobStatus.COMPLETED.value,
    BatchJobStatus.FAILED.value,
    BatchJobStatus.CANCELLED.value,
})

ACTIVE_JOB_STATUSES: frozenset[str] = frozenset({
    BatchJobStatus.PENDING.value,
    BatchJobStatus.IN_PROGRESS.value,
})

# Entries waiting for a worker.
DUE_QUEUE_STATUSES: frozenset[str] = frozenset({
    QueueStatus.PENDING.value,
    QueueStatus.QUEUED.value,
})

# Entries that still block job completion.
OPEN_QUEUE_STATUSES: frozenset[str] = DUE_QUEUE_STATUSES | {QueueStatus.PROCESSING.value}

CANCELLABLE_QUEUE_STATUSES: frozenset[str] = DUE_QUEUE_STATUSES

DEFAULT_PRIORITY = 5
DEFAULT_MAX_RETRIES = 3
