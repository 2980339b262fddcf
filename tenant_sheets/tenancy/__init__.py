"""
Tenancy Module

- **models.py**: TenantConfig (immutable, replaced atomically on refresh)
- **sources.py**: Declarative registry sources (env JSON, file, static)
- **registry.py**: TenantRegistry with periodic, fail-open refresh
"""

from tenant_sheets.tenancy.models import TenantConfig
from tenant_sheets.tenancy.registry import TenantRegistry
from tenant_sheets.tenancy.sources import (
    EnvTenantSource,
    FileTenantSource,
    StaticTenantSource,
    TenantSource,
    parse_registry,
)

__all__ = [
    "EnvTenantSource",
    "FileTenantSource",
    "StaticTenantSource",
    "TenantConfig",
    "TenantRegistry",
    "TenantSource",
    "parse_registry",
]
