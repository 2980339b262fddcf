"""
Core Configuration Module

- **constants.py**: Domain enums (ResourceKind, OperationKind, OperationState,
  HandleState, TenantPlan, RateScope, SizeUnknownPolicy), stage codes and defaults.

Environment-driven settings live in ``tenant_sheets.config.settings``.

Usage:
------
```python
from tenant_sheets.core.config import ResourceKind, OperationKind
from tenant_sheets.config import get_settings

settings = get_settings()
ttl = settings.cache.ttl_map()[ResourceKind.ROWS]
```
"""

from tenant_sheets.core.config.constants import (
    DEFAULT_RESOURCE_TTLS,
    PLAN_RATE_LIMITS,
    HandleState,
    OperationKind,
    OperationState,
    RateScope,
    ResourceKind,
    SizeUnknownPolicy,
    Stage,
    TenantPlan,
)

__all__ = [
    "DEFAULT_RESOURCE_TTLS",
    "PLAN_RATE_LIMITS",
    "HandleState",
    "OperationKind",
    "OperationState",
    "RateScope",
    "ResourceKind",
    "SizeUnknownPolicy",
    "Stage",
    "TenantPlan",
]
