"""
Rate Limiting Exceptions

All exceptions related to rate limiting operations

Author: System Architect
Date: 2026-10-19
"""

import math
from typing import Any

from tenant_sheets.core.exceptions.base import TenantSheetsError


class RateLimitError(TenantSheetsError):
    """Base exception for rate limiting errors."""

    kind = "rate_limit_error"
    http_status = 429


class ThrottledError(RateLimitError):
    """
    Raised when a tenant or IP bucket has no tokens left.

    Terminal for this call: the layer never retries it on the caller's
    behalf. ``retry_after`` is the number of seconds until enough tokens
    have accrued; the HTTP mapping turns it into a Retry-After header.
    """

    kind = "throttled"
    http_status = 429

    def __init__(
        self,
        message: str,
        retry_after: float,
        tenant_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, tenant_id=tenant_id, details=details)
        self.retry_after = retry_after
        # JSON has no infinity; a bucket that can never refill reports null
        self.details.setdefault("retry_after", round(retry_after, 3) if math.isfinite(retry_after) else None)
