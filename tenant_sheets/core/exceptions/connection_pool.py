"""
Connection Pool Exceptions

All exceptions related to pooled document handles.

Author: System Architect
Date: 2026-10-19
"""

from tenant_sheets.core.exceptions.base import TenantSheetsError


class ConnectionPoolError(TenantSheetsError):
    """Base exception for connection pool errors."""

    kind = "connection_pool_error"
    http_status = 502


class ConnectionFailedError(ConnectionPoolError):
    """
    Raised when a tenant's backing document could not be loaded.

    Document loading is retried with exponential backoff before this
    surfaces. ``__cause__`` holds the last underlying error.
    """

    kind = "connection_failed"
    http_status = 502


class ConnectionPoolExhaustedError(ConnectionPoolError):
    """
    Raised when the pool is at its bound and no idle handle can be evicted.

    Clients should retry after a short delay.
    """

    kind = "pool_exhausted"
    http_status = 503
