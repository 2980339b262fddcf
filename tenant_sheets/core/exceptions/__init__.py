"""
Exception Module

Structured exception hierarchy for the tenant sheets data-access layer.
All exceptions are organized by theme and carry a stable ``kind`` and
``http_status`` so route handlers can map them without inspection.

Module Structure:
-----------------
- **base.py**: TenantSheetsError base class + ConfigurationError
- **tenant.py**: Tenant registry / tenant gate exceptions
- **rate_limit.py**: Throttling exceptions
- **connection_pool.py**: Document handle pool exceptions
- **store.py**: Remote store exceptions (transient vs terminal)
- **queue.py**: Batch queue exceptions
- **cache.py**: Cache API misuse

Usage:
------
```python
from tenant_sheets.core.exceptions import ThrottledError, TenantDisabledError

try:
    rows = await service.get_rows("acme", "USERS")
except ThrottledError as e:
    retry_in = e.retry_after
```

Author: System Architect
Date: 2026-10-19
"""

# Base exception
from tenant_sheets.core.exceptions.base import ConfigurationError, TenantSheetsError

# Cache exceptions
from tenant_sheets.core.exceptions.cache import CacheError, CacheKeyError

# Connection Pool exceptions
from tenant_sheets.core.exceptions.connection_pool import (
    ConnectionFailedError,
    ConnectionPoolError,
    ConnectionPoolExhaustedError,
)

# Queue exceptions
from tenant_sheets.core.exceptions.queue import (
    QueueError,
    QueueFullError,
    QueueShutdownError,
    RetriesExhaustedError,
)

# Rate limit exceptions
from tenant_sheets.core.exceptions.rate_limit import RateLimitError, ThrottledError

# Remote store exceptions
from tenant_sheets.core.exceptions.store import (
    HANDLE_BREAKING_ERRORS,
    DocumentNotFoundError,
    InvalidOperationError,
    QuotaExceededError,
    RemoteAuthError,
    RemoteStoreError,
    RemoteTimeoutError,
    SheetNotFoundError,
    UnavailableError,
)

# Tenant exceptions
from tenant_sheets.core.exceptions.tenant import (
    InvalidTenantConfigError,
    TenantDisabledError,
    TenantError,
    TenantNotFoundError,
)

__all__ = [
    # Base
    "TenantSheetsError",
    "ConfigurationError",
    # Tenant
    "TenantError",
    "TenantNotFoundError",
    "TenantDisabledError",
    "InvalidTenantConfigError",
    # Rate Limit
    "RateLimitError",
    "ThrottledError",
    # Connection Pool
    "ConnectionPoolError",
    "ConnectionFailedError",
    "ConnectionPoolExhaustedError",
    # Remote Store
    "RemoteStoreError",
    "QuotaExceededError",
    "UnavailableError",
    "RemoteTimeoutError",
    "InvalidOperationError",
    "SheetNotFoundError",
    "RemoteAuthError",
    "DocumentNotFoundError",
    "HANDLE_BREAKING_ERRORS",
    # Queue
    "QueueError",
    "QueueFullError",
    "QueueShutdownError",
    "RetriesExhaustedError",
    # Cache
    "CacheError",
    "CacheKeyError",
]
