"""Distribution error taxonomy.

Validation faults (``InvalidArgument``, ``NoRecipients``) are raised
before any record is written.  Delivery faults (``DeliveryError`` and
its permanent subclass ``RecipientRejected``) are captured per queue
entry by the dispatch worker and never reach the run caller.  Store
faults are SQLAlchemy's own exceptions and propagate unchanged.
"""
from __future__ import annotations


class DistributionError(Exception):
    """Base class for every error raised by the distribution engine."""


class InvalidArgument(DistributionError, ValueError):
    pass


class InvalidState(DistributionError, ValueError):
    """A state-machine transition was requested from the wrong status."""


class NoRecipients(InvalidArgument):
    pass


class NothingToRetry(DistributionError):
    """No failed entry under the job has retry budget left."""

    retried = 0


class JobNotFound(DistributionError, KeyError):
    pass


class DeliveryError(DistributionError):
    """Transient delivery fault; the entry is retried with backoff."""


class RecipientRejected(DeliveryError):
    """Permanent delivery fault (hard bounce / invalid address)."""


class DocumentAccessError(DistributionError):
    """The document store could not issue an access handle."""
