"""
Base Exception Class

This module contains ONLY the base exception class that all other exceptions inherit from.
All specialized exceptions are in their respective themed modules.

Author: System Architect
Date: 2026-10-19
"""

from typing import Any


class TenantSheetsError(Exception):
    """
    Base exception for all data-access layer errors.

    All custom exceptions inherit from this class to enable:
    - Consistent error handling
    - Tenant correlation
    - A stable HTTP status mapping (``kind`` + ``http_status``)
    - Rich context for debugging

    Class attributes:
        kind: Stable, machine-readable error kind
        http_status: Status code route handlers should answer with
        retryable: True when the batch queue may retry the failed call

    Attributes:
        message: Error message
        tenant_id: Tenant the error belongs to (if known)
        details: Additional error details (dict)

    Example:
        raise QuotaExceededError(
            "Write quota exceeded",
            tenant_id="acme",
            details={"sheet": "USERS", "status": 429}
        )
    """

    kind: str = "internal_error"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self, message: str, tenant_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.tenant_id = tenant_id
        self.details = (details or {}).copy()  # Create a copy to prevent external modification
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/API responses.

        Returns:
            Dict with error_type, kind, message, tenant_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "tenant_id": self.tenant_id,
            "details": self.details,
        }

    def with_suggestion(self, suggestion: str) -> "TenantSheetsError":
        """
        Add a suggestion to help users fix the error.

        Returns:
            Self (for method chaining)
        """
        self.details["suggestion"] = suggestion
        return self

    def with_context(self, **context) -> "TenantSheetsError":
        """
        Add additional context to the error details.

        Returns:
            Self (for method chaining)
        """
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        """
        Return detailed string representation for debugging.

        Example:
            >>> error = QuotaExceededError("Quota", tenant_id="acme", details={"status": 429})
            >>> repr(error)
            "QuotaExceededError(message='Quota', tenant_id='acme', details={'status': 429})"
        """
        details_str = f", details={self.details}" if self.details else ""
        tenant_str = f", tenant_id='{self.tenant_id}'" if self.tenant_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{tenant_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        tenant_id: str | None = None,
        **details
    ) -> "TenantSheetsError":
        """
        Create an error of this class from another exception.

        Useful for wrapping third-party exceptions (gspread, google-auth)
        with additional context.

        Example:
            >>> try:
            ...     worksheet.append_rows(rows)
            ... except gspread.exceptions.APIError as e:
            ...     raise UnavailableError.from_exception(e, tenant_id="acme", sheet="USERS")
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details
        }
        return cls(error_message, tenant_id=tenant_id, details=error_details)


# Configuration exception (kept here as it's fundamental)
class ConfigurationError(TenantSheetsError):
    """Raised when configuration is invalid or missing."""

    kind = "configuration_error"
