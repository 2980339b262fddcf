"""
Configuration package for the tenant sheets data-access layer.

This package provides centralized, type-safe configuration management
using Pydantic Settings.
"""

from .settings import (
    BatchQueueSettings,
    CacheSettings,
    ConnectionPoolSettings,
    LoggingSettings,
    RateLimitSettings,
    RemoteStoreSettings,
    Settings,
    TenantRegistrySettings,
    get_settings,
    reload_settings,
)

__all__ = [
    "BatchQueueSettings",
    "CacheSettings",
    "ConnectionPoolSettings",
    "LoggingSettings",
    "RateLimitSettings",
    "RemoteStoreSettings",
    "Settings",
    "TenantRegistrySettings",
    "get_settings",
    "reload_settings",
]
