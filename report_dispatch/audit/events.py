"""Event type constants for the distribution audit trail."""
from __future__ import annotations

EVENT_DISTRIBUTION_INITIATED = "distribution_initiated"
EVENT_DISTRIBUTION_RETRIED = "distribution_retried"
EVENT_BATCH_JOB_CANCELLED = "batch_job_cancelled"
EVENT_BATCH_JOB_COMPLETED = "batch_job_completed"

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_DISTRIBUTION_INITIATED,
    EVENT_DISTRIBUTION_RETRIED,
    EVENT_BATCH_JOB_CANCELLED,
    EVENT_BATCH_JOB_COMPLETED,
})
