"""
Sheets Service - the data-access facade
=======================================

WHAT IS THIS SERVICE?
---------------------
SheetsService is the single entry point application code uses to read and
write tenant sheets. Route handlers never talk to the cache, the pool or the
queue directly; they call the facade and let its errors propagate to the
registered exception handlers.

READ PATH:
----------
1. Tenant gate (unknown -> 404, disabled -> 403), before anything else
2. Cache lookup (namespaced by tenant, TTL per resource kind)
3. On a miss: rate limiter admission, pooled handle, remote read
4. Populate the cache, unless a write to the same sheet completed meanwhile

WRITE PATH:
-----------
1. Tenant gate
2. Enqueue on the (tenant, sheet) batch queue
3. Await the operation's future (``wait=True``). The queue invalidates the
   cache before it resolves the future, so a read issued after a write
   returned sees that write.

STAGE-SV: Service facade
------------------------
SV.1: Tenant gate
SV.2: Read served from cache
SV.3: Read fetched from the store
SV.4: Write accepted
SV.5: Sheet ensured
SV.6: Health check
SV.7: Lifecycle
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from tenant_sheets.core.config.constants import OperationKind, ResourceKind
from tenant_sheets.core.exceptions import (
    InvalidOperationError,
    RemoteTimeoutError,
    SheetNotFoundError,
    TenantDisabledError,
    TenantSheetsError,
    ThrottledError,
)
from tenant_sheets.core.logging import bind_log_context, get_logger, log_stage
from tenant_sheets.core.resilience.batch_queue import BatchQueueManager, QueueOperation
from tenant_sheets.core.resilience.connection_pool_manager import DocumentConnectionPool
from tenant_sheets.infrastructure.cache.cache_manager import MISS, CacheKey, CacheManager
from tenant_sheets.infrastructure.cache.invalidation import CacheInvalidator
from tenant_sheets.infrastructure.monitoring.metrics_collector import MetricsCollector
from tenant_sheets.infrastructure.store.base import RowFilter, SheetRef, SheetRow
from tenant_sheets.rate_limiting.rate_limiter import TokenBucketRateLimiter
from tenant_sheets.tenancy.models import TenantConfig
from tenant_sheets.tenancy.registry import TenantRegistry

logger = get_logger(__name__)


# ============================================================================
# RESPONSE MODELS
# ============================================================================


class ServiceMetrics(BaseModel):
    """Process-wide counters of the data-access layer."""

    operations_total: int = Field(description="Completed reads and writes (any outcome)")
    cache_hits: int
    cache_misses: int
    cache_hit_ratio: float = Field(ge=0.0, le=1.0)
    avg_latency_ms: float = Field(description="Mean latency of timed operations")
    queue_depth: int = 0
    pool_size: int = 0


class HealthReport(BaseModel):
    """Result of a per-tenant health probe."""

    tenant_id: str
    sheets_ok: bool
    cache_ok: bool
    latency_ms: float | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.sheets_ok and self.cache_ok


def row_number_of(row_ref: int | SheetRow) -> int:
    """Accept either a row number or a row previously returned by get_rows."""
    if isinstance(row_ref, SheetRow):
        return row_ref.row_number
    if isinstance(row_ref, int) and not isinstance(row_ref, bool):
        return row_ref
    raise InvalidOperationError(
        "Row reference must be a row number or a SheetRow",
        details={"row_ref": repr(row_ref)},
    )


def _copy_rows(rows) -> list[SheetRow]:
    """Fresh rows for a caller; cached rows are never handed out."""
    return [SheetRow(row_number=row.row_number, values=dict(row.values)) for row in rows]


# ============================================================================
# SHEETS SERVICE
# ============================================================================


class SheetsService:
    """
    Multi-tenant facade over the remote sheet store.

    DESIGN PRINCIPLES:
    ------------------
    - Dependency injection: every component is built by the composition root
      (``create_sheets_service``) and handed in; nothing is a module global
    - Tenant isolation: every cache key, bucket, handle and queue is scoped
      by tenant id
    - Errors propagate as TenantSheetsError subclasses with a stable kind

    USAGE:
    ------
    service = create_sheets_service(settings, store)
    await service.start()
    await service.add_rows("acme", "USERS", [{"id": "1", "email": "a@b.c"}])
    rows = await service.get_rows("acme", "USERS")
    """

    def __init__(
        self,
        registry: TenantRegistry,
        rate_limiter: TokenBucketRateLimiter,
        pool: DocumentConnectionPool,
        cache: CacheManager,
        invalidator: CacheInvalidator,
        queue: BatchQueueManager,
        metrics: MetricsCollector,
        remote_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.pool = pool
        self.cache = cache
        self.invalidator = invalidator
        self.queue = queue
        self.metrics = metrics
        self._remote_timeout = remote_timeout
        self._clock = clock

        logger.info("Sheets service initialized", stage="SV.0")

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Load the tenant registry and start the background tasks."""
        await self.registry.start()
        await self.cache.start()
        await self.pool.start()
        log_stage(logger, "SV.7", "Sheets service started", tenants=len(self.registry))

    async def shutdown(self, drain: bool = True) -> None:
        """Drain (or abandon) queued writes, then stop every component."""
        await self.queue.shutdown(drain=drain)
        await self.cache.shutdown()
        await self.pool.shutdown()
        await self.registry.shutdown()
        log_stage(logger, "SV.7", "Sheets service shut down", drained=drain)

    # ========================================================================
    # Internals
    # ========================================================================

    def _gate(self, tenant_id: str) -> TenantConfig:
        """
        Resolve an enabled tenant.

        STAGE-SV.1: Runs before any cache, pool or queue access.
        """
        bind_log_context(tenant_id=tenant_id)
        tenant = self.registry.resolve(tenant_id)
        if not tenant.enabled:
            log_stage(logger, "SV.1", "Disabled tenant rejected", level="warning", tenant_id=tenant_id)
            raise TenantDisabledError(f"Tenant '{tenant_id}' is disabled", tenant_id=tenant_id)
        return tenant

    def _admit(self, tenant: TenantConfig, client_ip: str | None) -> None:
        try:
            self.rate_limiter.check(tenant, client_ip)
        except ThrottledError:
            self.metrics.record_throttle("read")
            raise

    async def _timed(self, awaitable, tenant_id: str, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._remote_timeout)
        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(
                f"Remote {what} timed out",
                tenant_id=tenant_id,
                details={"timeout": self._remote_timeout},
            ) from e

    def _record(self, operation: str, status: str, started: float) -> None:
        self.metrics.record_operation(operation, status, self._clock() - started)

    async def _write(
        self,
        tenant_id: str,
        sheet_title: str,
        kind: OperationKind,
        payload: dict[str, Any],
        client_ip: str | None,
        wait: bool,
    ) -> str:
        self._gate(tenant_id)
        op = self.queue.enqueue(tenant_id, sheet_title, kind, payload, client_ip=client_ip)
        bind_log_context(tenant_id=tenant_id, op_id=op.op_id)
        log_stage(
            logger,
            "SV.4",
            "Write accepted",
            level="debug",
            sheet=sheet_title,
            kind=kind.value,
            wait=wait,
        )
        if wait:
            await op.future
        return op.op_id

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_rows(
        self,
        tenant_id: str,
        sheet_title: str,
        row_filter: RowFilter | None = None,
        client_ip: str | None = None,
        resource_kind: ResourceKind = ResourceKind.ROWS,
    ) -> list[SheetRow]:
        """
        Read rows of a sheet, serving from the cache when possible.

        ``resource_kind`` selects the cache policy: CONFIG for configuration
        sheets, ANALYTICS for derived data, ROWS otherwise.

        Raises:
            TenantNotFoundError / TenantDisabledError: Tenant gate
            ThrottledError: Rate limit hit on a cache miss
            SheetNotFoundError: No such sheet
        """
        started = self._clock()
        tenant = self._gate(tenant_id)
        key = CacheKey.build(
            tenant_id, resource_kind, sheet_title, row_filter.cache_params() if row_filter else None
        )

        cached = self.cache.get(key)
        if cached is not MISS:
            self.metrics.record_cache_hit(resource_kind.value)
            self._record("get_rows", "cache_hit", started)
            log_stage(logger, "SV.2", "Rows served from cache", level="debug", sheet=sheet_title)
            return _copy_rows(cached)
        self.metrics.record_cache_miss(resource_kind.value)

        try:
            self._admit(tenant, client_ip)
            generation = self.invalidator.generation(tenant_id, sheet_title)
            async with self.pool.lease(tenant_id) as handle:
                sheet = await self._timed(handle.document.sheet(sheet_title), tenant_id, "sheet lookup")
                rows = await self._timed(sheet.get_rows(row_filter), tenant_id, "read")
        except TenantSheetsError as e:
            self._record("get_rows", "failure", started)
            self.metrics.record_error(e.kind, "SV.3")
            raise
        except Exception as e:
            error = TenantSheetsError.from_exception(e, tenant_id=tenant_id, sheet=sheet_title)
            self._record("get_rows", "failure", started)
            self.metrics.record_error(error.kind, "SV.3")
            raise error from e

        if self.invalidator.generation(tenant_id, sheet_title) == generation:
            self.cache.set(key, tuple(_copy_rows(rows)))
        self._record("get_rows", "success", started)
        log_stage(logger, "SV.3", "Rows fetched", sheet=sheet_title, rows=len(rows), kind=resource_kind.value)
        return _copy_rows(rows)

    async def ensure_sheet(
        self,
        tenant_id: str,
        title: str,
        header_columns: list[str] | tuple[str, ...],
        client_ip: str | None = None,
    ) -> SheetRef:
        """
        Make sure a sheet exists, creating it with its header row if needed.

        The resulting SheetRef is cached under SHEET_INFO.
        """
        started = self._clock()
        tenant = self._gate(tenant_id)
        if not header_columns:
            raise InvalidOperationError("A sheet needs at least one header column", tenant_id=tenant_id)

        key = CacheKey.build(tenant_id, ResourceKind.SHEET_INFO, title)
        cached = self.cache.get(key)
        if cached is not MISS:
            self.metrics.record_cache_hit(ResourceKind.SHEET_INFO.value)
            self._record("ensure_sheet", "cache_hit", started)
            return cached
        self.metrics.record_cache_miss(ResourceKind.SHEET_INFO.value)

        try:
            self._admit(tenant, client_ip)
            generation = self.invalidator.generation(tenant_id, title)
            async with self.pool.lease(tenant_id) as handle:
                created = False
                try:
                    sheet = await self._timed(handle.document.sheet(title), tenant_id, "sheet lookup")
                except SheetNotFoundError:
                    sheet = await self._timed(
                        handle.document.sheet(title, header_columns=list(header_columns), create=True),
                        tenant_id,
                        "sheet creation",
                    )
                    created = True
        except TenantSheetsError as e:
            self._record("ensure_sheet", "failure", started)
            self.metrics.record_error(e.kind, "SV.5")
            raise
        except Exception as e:
            error = TenantSheetsError.from_exception(e, tenant_id=tenant_id, sheet=title)
            self._record("ensure_sheet", "failure", started)
            self.metrics.record_error(error.kind, "SV.5")
            raise error from e

        ref = SheetRef(title=title, header_columns=tuple(sheet.header_columns), created=created)
        if self.invalidator.generation(tenant_id, title) == generation:
            self.cache.set(key, ref)
        self._record("ensure_sheet", "success", started)
        log_stage(logger, "SV.5", "Sheet ensured", sheet=title, created=created)
        return ref

    # ========================================================================
    # Writes
    # ========================================================================

    async def add_rows(
        self,
        tenant_id: str,
        sheet_title: str,
        rows: list[dict[str, Any]],
        client_ip: str | None = None,
        wait: bool = True,
    ) -> str:
        """Append rows; returns the operation id."""
        payload = {"rows": [dict(row) for row in rows]}
        return await self._write(tenant_id, sheet_title, OperationKind.ADD_ROWS, payload, client_ip, wait)

    async def update_row(
        self,
        tenant_id: str,
        sheet_title: str,
        row_ref: int | SheetRow,
        patch: dict[str, Any],
        client_ip: str | None = None,
        wait: bool = True,
    ) -> str:
        """Merge ``patch`` into one row; columns not in the patch keep their value."""
        if not patch:
            raise InvalidOperationError("update_row needs at least one column", tenant_id=tenant_id)
        payload = {"row_number": row_number_of(row_ref), "values": dict(patch)}
        return await self._write(tenant_id, sheet_title, OperationKind.UPDATE_ROW, payload, client_ip, wait)

    async def delete_row(
        self,
        tenant_id: str,
        sheet_title: str,
        row_ref: int | SheetRow,
        client_ip: str | None = None,
        wait: bool = True,
    ) -> str:
        payload = {"row_number": row_number_of(row_ref)}
        return await self._write(tenant_id, sheet_title, OperationKind.DELETE_ROW, payload, client_ip, wait)

    def get_operation(self, op_id: str) -> QueueOperation | None:
        """The queued operation behind an op id, while it is not yet terminal."""
        return self.queue.get_operation(op_id)

    # ========================================================================
    # Observability
    # ========================================================================

    def get_metrics(self) -> ServiceMetrics:
        cache_stats = self.cache.stats()
        self.metrics.set_pool_size(len(self.pool))
        return ServiceMetrics(
            operations_total=self.metrics.operations_total,
            cache_hits=cache_stats.hits,
            cache_misses=cache_stats.misses,
            cache_hit_ratio=cache_stats.hit_ratio,
            avg_latency_ms=round(self.metrics.avg_latency_ms, 3),
            queue_depth=self.queue.depth(),
            pool_size=len(self.pool),
        )

    async def health_check(self, tenant_id: str) -> HealthReport:
        """
        Probe the tenant's document and the cache.

        STAGE-SV.6: The document probe lists sheet titles, the lightest call
        the store offers; it is rate limited like any other read.
        """
        tenant = self._gate(tenant_id)
        cache_health = self.cache.health_check()
        details: dict[str, Any] = {"cache": cache_health}

        started = self._clock()
        sheets_ok = False
        latency_ms = None
        decision = self.rate_limiter.admit(tenant)
        if not decision.allowed:
            details["sheets_error"] = ThrottledError.kind
            details["retry_after"] = round(decision.retry_after, 3)
        else:
            try:
                async with self.pool.lease(tenant_id) as handle:
                    titles = await self._timed(handle.document.sheet_titles(), tenant_id, "health probe")
                sheets_ok = True
                latency_ms = round((self._clock() - started) * 1000, 3)
                details["sheet_count"] = len(titles)
            except TenantSheetsError as e:
                details["sheets_error"] = e.kind
            except Exception as e:
                details["sheets_error"] = TenantSheetsError.kind
                details["sheets_error_type"] = type(e).__name__

        report = HealthReport(
            tenant_id=tenant_id,
            sheets_ok=sheets_ok,
            cache_ok=cache_health["healthy"],
            latency_ms=latency_ms,
            details=details,
        )
        log_stage(
            logger,
            "SV.6",
            "Health check",
            level="info" if report.healthy else "warning",
            sheets_ok=report.sheets_ok,
            cache_ok=report.cache_ok,
        )
        return report

    def stats(self) -> dict[str, Any]:
        """Component-level statistics for admin endpoints."""
        return {
            "registry": self.registry.stats(),
            "rate_limiter": self.rate_limiter.stats(),
            "pool": self.pool.stats(),
            "cache": self.cache.stats().to_dict(),
            "invalidation": self.invalidator.stats(),
            "queue": self.queue.stats(),
            "metrics": self.metrics.totals(),
        }
