"""
Tenant Exceptions

Raised by the tenant registry and the service facade's tenant gate.
Both are terminal and caused by the caller; they are never retried.

Author: System Architect
Date: 2026-10-19
"""

from tenant_sheets.core.exceptions.base import TenantSheetsError


class TenantError(TenantSheetsError):
    """Base exception for tenant resolution errors."""

    kind = "tenant_error"
    http_status = 400


class TenantNotFoundError(TenantError):
    """Raised when a tenant id is not present in the registry snapshot."""

    kind = "tenant_not_found"
    http_status = 404


class TenantDisabledError(TenantError):
    """
    Raised when a registered tenant is disabled.

    The facade raises this before touching the cache, the queue or the pool,
    so a disabled tenant never consumes quota or sees cached data.
    """

    kind = "tenant_disabled"
    http_status = 403


class InvalidTenantConfigError(TenantError):
    """Raised when a registry source holds an entry that cannot be parsed."""

    kind = "invalid_tenant_config"
    http_status = 500
