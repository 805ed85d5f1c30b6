"""Bulk report card distribution.

Groups finalized report cards by recipient, queues one consolidated
email per recipient under a ``BatchJob``, and drains the queue through
a single-flight scheduled worker with bounded retries.
"""
