"""
Batch Queue Exceptions

All exceptions related to the per-(tenant, sheet) write queues.

Author: System Architect
Date: 2026-10-19
"""

from tenant_sheets.core.exceptions.base import TenantSheetsError


class QueueError(TenantSheetsError):
    """Base exception for batch queue errors."""

    kind = "queue_error"
    http_status = 502


class QueueFullError(QueueError):
    """
    Raised when a (tenant, sheet) queue already holds its maximum depth.

    Backpressure signal: the caller should slow down and retry later.
    """

    kind = "queue_full"
    http_status = 503


class QueueShutdownError(QueueError):
    """Raised for writes enqueued after (or abandoned by) shutdown."""

    kind = "queue_shutdown"
    http_status = 503


class RetriesExhaustedError(QueueError):
    """
    Raised when a batch failed transiently on every allowed attempt.

    ``__cause__`` is the last transient error; ``details["attempts"]`` the
    number of remote calls made.
    """

    kind = "retries_exhausted"
    http_status = 502
