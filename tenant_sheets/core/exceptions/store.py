"""
Remote Store Exceptions

Errors raised by remote store adapters. ``retryable`` separates the
transient ones (retried by the batch queue with backoff) from the
terminal ones (surfaced immediately).

| Error                  | retryable | breaks handle |
|------------------------|-----------|---------------|
| QuotaExceededError     | yes       | no            |
| UnavailableError       | yes       | no            |
| RemoteTimeoutError     | yes       | no            |
| InvalidOperationError  | no        | no            |
| SheetNotFoundError     | no        | no            |
| RemoteAuthError        | no        | yes           |
| DocumentNotFoundError  | no        | yes           |

Author: System Architect
Date: 2026-10-19
"""

from tenant_sheets.core.exceptions.base import TenantSheetsError


class RemoteStoreError(TenantSheetsError):
    """Base exception for remote store errors."""

    kind = "remote_store_error"
    http_status = 502


class QuotaExceededError(RemoteStoreError):
    """The remote API rejected the call because a request quota is spent."""

    kind = "quota_exceeded"
    retryable = True


class UnavailableError(RemoteStoreError):
    """Transient network or server-side failure."""

    kind = "unavailable"
    retryable = True


class RemoteTimeoutError(UnavailableError):
    """A remote call exceeded its upper time bound."""

    kind = "timeout"


class InvalidOperationError(RemoteStoreError):
    """
    Malformed payload or reference (unknown row, bad range, empty write).

    Terminal: retrying an invalid call can never succeed.
    """

    kind = "invalid"
    http_status = 400


class SheetNotFoundError(InvalidOperationError):
    """The document has no worksheet with the requested title."""

    kind = "sheet_not_found"
    http_status = 404


class RemoteAuthError(RemoteStoreError):
    """The tenant's credentials were rejected."""

    kind = "remote_auth"


class DocumentNotFoundError(RemoteStoreError):
    """The tenant's backing document does not exist or is not shared."""

    kind = "document_not_found"


# Errors after which a pooled handle must not be reused
HANDLE_BREAKING_ERRORS = (RemoteAuthError, DocumentNotFoundError)
