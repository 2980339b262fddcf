#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
tenant sheets data-access layer. Every component receives its section of the
settings at construction time; nothing reads the environment on its own.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Flat environment names, grouped into sections through properties
- Easy testing with override mechanisms (keyword arguments win over env)

Author: System Architect
Date: 2026-10-19
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tenant_sheets.core.config import constants as c
from tenant_sheets.core.config.constants import ResourceKind, SizeUnknownPolicy, TenantPlan


class TenantRegistrySettings(BaseSettings):
    """
    Tenant registry sources and refresh cadence.

    STAGE-TR: Tenant registry configuration

    TENANT_REGISTRY_JSON maps tenant ids to either a document id string or an
    object with document_id, name, plan, enabled and credentials_ref.
    """

    TENANT_REGISTRY_JSON: str = Field(default="", description="Inline tenant registry (JSON object)")
    TENANT_REGISTRY_FILE: str | None = Field(default=None, description="Path to a tenant registry JSON file")
    DEFAULT_TENANT_ID: str = Field(default="default", description="Tenant id used when the registry is empty")
    DEFAULT_DOCUMENT_ID: str | None = Field(default=None, description="Backing document of the default tenant")
    DEFAULT_CREDENTIALS_REF: str | None = Field(default=None, description="Credentials of the default tenant")
    TENANT_REFRESH_INTERVAL: float = Field(
        default=c.DEFAULT_REGISTRY_REFRESH_INTERVAL, description="Registry refresh interval in seconds"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RateLimitSettings(BaseSettings):
    """
    Token bucket sizes per tenant plan and per source IP.

    STAGE-RL: Rate limiting thresholds

    Architectural Decision: in-process token buckets
    - Lazy refill at check time, no timers
    - Tenant plan bucket AND per-IP bucket must both admit
    """

    RATE_LIMIT_STARTER_CAPACITY: float = Field(default=c.PLAN_RATE_LIMITS[TenantPlan.STARTER][0])
    RATE_LIMIT_STARTER_REFILL: float = Field(default=c.PLAN_RATE_LIMITS[TenantPlan.STARTER][1])
    RATE_LIMIT_GROWTH_CAPACITY: float = Field(default=c.PLAN_RATE_LIMITS[TenantPlan.GROWTH][0])
    RATE_LIMIT_GROWTH_REFILL: float = Field(default=c.PLAN_RATE_LIMITS[TenantPlan.GROWTH][1])
    RATE_LIMIT_PRO_CAPACITY: float = Field(default=c.PLAN_RATE_LIMITS[TenantPlan.PRO][0])
    RATE_LIMIT_PRO_REFILL: float = Field(default=c.PLAN_RATE_LIMITS[TenantPlan.PRO][1])
    RATE_LIMIT_IP_CAPACITY: float = Field(default=c.IP_RATE_CAPACITY, description="Per-IP bucket capacity")
    RATE_LIMIT_IP_REFILL: float = Field(
        default=c.IP_RATE_REFILL_PER_SECOND, description="Per-IP tokens per second"
    )
    RATE_LIMIT_IDLE_SECONDS: float = Field(
        default=c.RATE_BUCKET_IDLE_SECONDS, description="Prune buckets unseen for this long"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)

    def plan_limits(self) -> dict[TenantPlan, tuple[float, float]]:
        """Return (capacity, refill per second) for every plan."""
        return {
            TenantPlan.STARTER: (self.RATE_LIMIT_STARTER_CAPACITY, self.RATE_LIMIT_STARTER_REFILL),
            TenantPlan.GROWTH: (self.RATE_LIMIT_GROWTH_CAPACITY, self.RATE_LIMIT_GROWTH_REFILL),
            TenantPlan.PRO: (self.RATE_LIMIT_PRO_CAPACITY, self.RATE_LIMIT_PRO_REFILL),
        }


class ConnectionPoolSettings(BaseSettings):
    """
    Connection pool bounds and document-load retry policy.

    STAGE-CP: Connection pool configuration
    """

    POOL_MAX_HANDLES: int = Field(default=c.POOL_MAX_HANDLES, description="Maximum pooled handles")
    POOL_MAX_IDLE_SECONDS: float = Field(default=c.POOL_MAX_IDLE_SECONDS, description="Evict idle handles after")
    POOL_MAINTENANCE_INTERVAL: float = Field(default=c.POOL_MAINTENANCE_INTERVAL)
    POOL_CONNECT_ATTEMPTS: int = Field(default=c.POOL_CONNECT_ATTEMPTS, description="Document load attempts")
    POOL_CONNECT_BACKOFF_BASE: float = Field(default=c.POOL_CONNECT_BACKOFF_BASE)
    POOL_CONNECT_BACKOFF_MAX: float = Field(default=c.POOL_CONNECT_BACKOFF_MAX)

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class BatchQueueSettings(BaseSettings):
    """
    Write queue batching, retry and timeout policy.

    STAGE-BQ: Batch queue configuration

    A batch is flushed after QUEUE_BATCH_MAX_ROWS queued rows or
    QUEUE_BATCH_WINDOW seconds, whichever comes first.
    """

    QUEUE_BATCH_MAX_ROWS: int = Field(default=c.QUEUE_BATCH_MAX_ROWS)
    QUEUE_BATCH_WINDOW: float = Field(default=c.QUEUE_BATCH_WINDOW_SECONDS)
    QUEUE_MAX_ATTEMPTS: int = Field(default=c.QUEUE_MAX_ATTEMPTS, description="Attempts per batch")
    QUEUE_BACKOFF_BASE: float = Field(default=c.QUEUE_BACKOFF_BASE, description="First retry delay")
    QUEUE_BACKOFF_MULTIPLIER: float = Field(default=c.QUEUE_BACKOFF_MULTIPLIER)
    QUEUE_BACKOFF_MAX: float = Field(default=c.QUEUE_BACKOFF_MAX)
    QUEUE_BACKOFF_JITTER: float = Field(default=c.QUEUE_BACKOFF_JITTER, description="Max random seconds added")
    QUEUE_REMOTE_TIMEOUT: float = Field(default=c.QUEUE_REMOTE_TIMEOUT, description="Upper bound per remote call")
    QUEUE_MAX_DEPTH: int = Field(default=c.QUEUE_MAX_DEPTH, description="Pending operations per queue")
    QUEUE_WORKER_BUDGET: int = Field(default=c.QUEUE_WORKER_BUDGET, description="Concurrent drains")
    QUEUE_THROTTLE_MAX_WAIT: float = Field(default=c.QUEUE_THROTTLE_MAX_WAIT)

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)

    @field_validator("QUEUE_MAX_ATTEMPTS", "QUEUE_BATCH_MAX_ROWS", "QUEUE_WORKER_BUDGET")
    @classmethod
    def validate_positive(cls, v):
        """Counts must be at least one."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class CacheSettings(BaseSettings):
    """
    Caching configuration.

    STAGE-C: Cache TTL configuration

    Optimization: Different TTLs for different resource kinds
    """

    CACHE_MAX_ENTRIES: int = Field(default=c.CACHE_MAX_ENTRIES, description="Maximum cached entries")
    CACHE_MAX_BYTES: int = Field(default=c.CACHE_MAX_BYTES, description="Estimated byte budget (0 = off)")
    CACHE_SWEEP_INTERVAL: float = Field(default=c.CACHE_SWEEP_INTERVAL, description="Expired entry sweep")
    CACHE_TTL_ROWS: float = Field(default=c.DEFAULT_RESOURCE_TTLS[ResourceKind.ROWS])
    CACHE_TTL_CONFIG: float = Field(default=c.DEFAULT_RESOURCE_TTLS[ResourceKind.CONFIG])
    CACHE_TTL_ANALYTICS: float = Field(default=c.DEFAULT_RESOURCE_TTLS[ResourceKind.ANALYTICS])
    CACHE_TTL_SHEET_INFO: float = Field(default=c.DEFAULT_RESOURCE_TTLS[ResourceKind.SHEET_INFO])
    CACHE_SIZE_UNKNOWN_POLICY: SizeUnknownPolicy = Field(
        default=SizeUnknownPolicy.ADMIT, description="admit (fail-open) or reject (fail-closed)"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)

    @field_validator("CACHE_TTL_ROWS", "CACHE_TTL_CONFIG", "CACHE_TTL_ANALYTICS", "CACHE_TTL_SHEET_INFO")
    @classmethod
    def validate_ttl(cls, v):
        """TTLs must be positive."""
        if v <= 0:
            raise ValueError("TTL must be > 0")
        return v

    def ttl_map(self) -> dict[ResourceKind, float]:
        """Return the TTL in seconds for every resource kind."""
        return {
            ResourceKind.ROWS: self.CACHE_TTL_ROWS,
            ResourceKind.CONFIG: self.CACHE_TTL_CONFIG,
            ResourceKind.ANALYTICS: self.CACHE_TTL_ANALYTICS,
            ResourceKind.SHEET_INFO: self.CACHE_TTL_SHEET_INFO,
        }


class RemoteStoreSettings(BaseSettings):
    """
    Remote row-store backend.

    STAGE-0.2: Remote store configuration

    gspread: Google Sheets through a service account
    memory: in-process store for local development
    """

    STORE_BACKEND: Literal["gspread", "memory"] = Field(default=c.STORE_BACKEND_GSPREAD)
    GOOGLE_SERVICE_ACCOUNT_FILE: str | None = Field(
        default=None, description="Default service account key file"
    )
    CREDENTIALS_DIR: str = Field(default="keys", description="Directory holding per-tenant key files")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration

    Architectural Decision: structlog for production-grade logging
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()


class Settings(
    TenantRegistrySettings,
    RateLimitSettings,
    ConnectionPoolSettings,
    BatchQueueSettings,
    CacheSettings,
    RemoteStoreSettings,
    LoggingSettings,
):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from tenant_sheets.config import get_settings

        settings = get_settings()
        ttl = settings.cache.ttl_map()[ResourceKind.CONFIG]
        attempts = settings.queue.QUEUE_MAX_ATTEMPTS
    """

    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    APP_NAME: str = Field(default="Tenant Sheets Data Layer", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"  # Ignore extra environment variables
    )

    def _section(self, section_cls):
        return section_cls(**{name: getattr(self, name) for name in section_cls.model_fields})

    # Nested configuration objects
    @property
    def registry(self) -> TenantRegistrySettings:
        """Get tenant registry settings."""
        return self._section(TenantRegistrySettings)

    @property
    def rate_limit(self) -> RateLimitSettings:
        """Get rate limit settings."""
        return self._section(RateLimitSettings)

    @property
    def pool(self) -> ConnectionPoolSettings:
        """Get connection pool settings."""
        return self._section(ConnectionPoolSettings)

    @property
    def queue(self) -> BatchQueueSettings:
        """Get batch queue settings."""
        return self._section(BatchQueueSettings)

    @property
    def cache(self) -> CacheSettings:
        """Get cache settings."""
        return self._section(CacheSettings)

    @property
    def store(self) -> RemoteStoreSettings:
        """Get remote store settings."""
        return self._section(RemoteStoreSettings)

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return self._section(LoggingSettings)


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    Returns:
        Settings: Global settings instance

    Components never call this themselves; the composition root passes
    the settings (or a section) into each constructor.
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
