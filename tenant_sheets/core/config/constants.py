"""
System Constants and Enumerations

This module defines system-wide constants and enumerations used across
the tenant sheets data-access layer.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for magic numbers
- Type-safe enums for state management
- Resource-kind policies are a finite enum, never free-form strings

Author: System Architect
Date: 2026-10-19
"""

import re
from enum import Enum

# ============================================================================
# Stage Identifiers (for structured logging)
# ============================================================================


class Stage(str, Enum):
    """
    Component stages for structured logging.

    Format: {PREFIX}_{DESCRIPTIVE_NAME}
    - PREFIX: Component code (TR, RL, CP, BQ, C, CI, SV)
    - DESCRIPTIVE_NAME: Clear, uppercase description with underscores

    Sub-stages are logged as "<prefix>.<n>" (e.g. "BQ.3") by each component.
    """

    TENANT_REGISTRY = "TR_TENANT_REGISTRY"
    RATE_LIMITING = "RL_RATE_LIMITING"
    CONNECTION_POOL = "CP_CONNECTION_POOL"
    BATCH_QUEUE = "BQ_BATCH_QUEUE"
    CACHE = "C_CACHE"
    CACHE_INVALIDATION = "CI_CACHE_INVALIDATION"
    SERVICE = "SV_SERVICE_FACADE"


# ============================================================================
# Tenancy
# ============================================================================


class TenantPlan(str, Enum):
    """Commercial plan of a tenant. Selects the tenant's rate bucket."""

    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"


# Tenant ids are used as cache-key namespaces and must never contain ":"
TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")

DEFAULT_REGISTRY_REFRESH_INTERVAL = 60.0  # seconds


# ============================================================================
# Rate Limiting
# ============================================================================


class RateScope(str, Enum):
    """Independent admission scopes checked for every outbound call."""

    TENANT = "tenant"
    IP = "ip"


# (capacity, refill per second) per plan. The remote store allows roughly
# 100 requests per 100s per user, so sustained rates stay below 1/s.
PLAN_RATE_LIMITS: dict[TenantPlan, tuple[float, float]] = {
    TenantPlan.STARTER: (20.0, 0.5),
    TenantPlan.GROWTH: (40.0, 0.8),
    TenantPlan.PRO: (60.0, 0.9),
}

IP_RATE_CAPACITY = 300.0
IP_RATE_REFILL_PER_SECOND = 5.0
RATE_BUCKET_IDLE_SECONDS = 300.0
RATE_BUCKET_PRUNE_INTERVAL = 60.0


# ============================================================================
# Connection Pool
# ============================================================================


class HandleState(str, Enum):
    """
    Connection handle lifecycle.

    IDLE: Live, no operation in flight
    IN_USE: At least one operation holds the handle
    BROKEN: Unrecoverable auth/document error, evicted on release
    """

    IDLE = "idle"
    IN_USE = "in_use"
    BROKEN = "broken"


POOL_MAX_HANDLES = 100
POOL_MAX_IDLE_SECONDS = 300.0
POOL_MAINTENANCE_INTERVAL = 60.0
POOL_CONNECT_ATTEMPTS = 3
POOL_CONNECT_BACKOFF_BASE = 0.5
POOL_CONNECT_BACKOFF_MAX = 5.0


# ============================================================================
# Batch Queue
# ============================================================================


class OperationKind(str, Enum):
    """Mutations accepted by the batch queue."""

    ADD_ROWS = "add_rows"
    UPDATE_ROW = "update_row"
    DELETE_ROW = "delete_row"


class OperationState(str, Enum):
    """
    QueueOperation state machine.

    PENDING -> IN_FLIGHT -> SUCCEEDED
                         -> RETRYING -> IN_FLIGHT
                         -> FAILED
    PENDING -> CANCELLED (caller abandoned the future before drain)
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_OPERATION_STATES = frozenset(
    {OperationState.SUCCEEDED, OperationState.FAILED, OperationState.CANCELLED}
)

QUEUE_BATCH_MAX_ROWS = 50
QUEUE_BATCH_WINDOW_SECONDS = 0.2
QUEUE_MAX_ATTEMPTS = 4
QUEUE_BACKOFF_BASE = 0.2
QUEUE_BACKOFF_MULTIPLIER = 2.0
QUEUE_BACKOFF_MAX = 10.0
QUEUE_BACKOFF_JITTER = 0.1
QUEUE_REMOTE_TIMEOUT = 10.0
QUEUE_MAX_DEPTH = 1000
QUEUE_WORKER_BUDGET = 25
QUEUE_THROTTLE_MAX_WAIT = 120.0


# ============================================================================
# Cache
# ============================================================================


class ResourceKind(str, Enum):
    """
    Kinds of cached reads. Each kind has its own TTL policy.

    ROWS: Row listings and filtered views of a sheet
    CONFIG: Configuration sheets (read often, written rarely)
    ANALYTICS: Aggregates derived from several sheets
    SHEET_INFO: Sheet metadata returned by ensure_sheet
    """

    ROWS = "rows"
    CONFIG = "config"
    ANALYTICS = "analytics"
    SHEET_INFO = "sheet_info"


class SizeUnknownPolicy(str, Enum):
    """
    What the cache does with a value whose size cannot be estimated.

    ADMIT: fail-open, store it and account zero bytes
    REJECT: fail-closed, do not cache it
    """

    ADMIT = "admit"
    REJECT = "reject"


DEFAULT_RESOURCE_TTLS: dict[ResourceKind, float] = {
    ResourceKind.ROWS: 15.0,
    ResourceKind.CONFIG: 300.0,
    ResourceKind.ANALYTICS: 60.0,
    ResourceKind.SHEET_INFO: 300.0,
}

CACHE_MAX_ENTRIES = 10000
CACHE_MAX_BYTES = 0  # 0 disables the byte budget
CACHE_SWEEP_INTERVAL = 60.0
CACHE_KEY_SEPARATOR = ":"

INVALIDATION_MAX_CASCADE_DEPTH = 10


# ============================================================================
# Remote Store
# ============================================================================

STORE_BACKEND_GSPREAD = "gspread"
STORE_BACKEND_MEMORY = "memory"

# HTTP statuses returned by the remote API, mapped to error kinds
REMOTE_QUOTA_STATUSES = frozenset({429})
REMOTE_AUTH_STATUSES = frozenset({401, 403})
REMOTE_NOT_FOUND_STATUSES = frozenset({404})
REMOTE_INVALID_STATUSES = frozenset({400})
REMOTE_QUOTA_KEYWORDS = ("quota", "rate limit", "too many requests")
