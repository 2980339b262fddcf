"""
Cache Exceptions

A cache miss is normal control flow and never raised. These cover misuse
of the cache API.

Author: System Architect
Date: 2026-10-19
"""

from tenant_sheets.core.exceptions.base import TenantSheetsError


class CacheError(TenantSheetsError):
    """Base exception for cache errors."""

    kind = "cache_error"


class CacheKeyError(CacheError):
    """Raised when a cache key or invalidation prefix is malformed."""

    kind = "cache_key_error"
