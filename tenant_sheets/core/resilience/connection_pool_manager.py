"""
Connection Pool Manager for tenant backing documents.

This module provides centralized handle management with:
- One authenticated document handle per tenant, created lazily
- Document loading retried with exponential backoff (tenacity)
- Broken-handle eviction and transparent recreation
- A bounded pool with least-recently-used idle eviction
- Idle-age eviction by a maintenance task
- Comprehensive stage-based logging

STAGE-CP: Connection Pool Management
-------------------------------------
CP.1: Handle acquisition (hit / miss)
CP.2: Document load and retry
CP.3: Handle release
CP.4: Eviction (broken, LRU, idle, tenant cleared)
CP.5: Maintenance

Concurrent reads may share a handle; writes are serialized per
(tenant, sheet) by the batch queue, not by the pool.

Author: System Architect
Date: 2026-10-19
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from tenant_sheets.core.config.constants import (
    POOL_CONNECT_ATTEMPTS,
    POOL_CONNECT_BACKOFF_BASE,
    POOL_CONNECT_BACKOFF_MAX,
    POOL_MAINTENANCE_INTERVAL,
    POOL_MAX_HANDLES,
    POOL_MAX_IDLE_SECONDS,
    QUEUE_REMOTE_TIMEOUT,
    HandleState,
)
from tenant_sheets.core.exceptions import (
    HANDLE_BREAKING_ERRORS,
    ConnectionFailedError,
    ConnectionPoolExhaustedError,
    RemoteTimeoutError,
    TenantDisabledError,
    TenantSheetsError,
)
from tenant_sheets.core.logging import get_logger, log_stage
from tenant_sheets.infrastructure.store.base import DocHandle, RemoteStore
from tenant_sheets.tenancy.models import TenantConfig
from tenant_sheets.tenancy.registry import TenantRegistry

logger = get_logger(__name__)


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, TenantSheetsError) and error.retryable


@dataclass
class ConnectionHandle:
    """A pooled, authenticated handle to one tenant's backing document."""

    tenant_id: str
    document_id: str
    credentials_ref: str | None
    document: DocHandle
    created_at: float
    last_used_at: float
    state: HandleState = HandleState.IDLE
    in_flight: int = 0
    use_count: int = 0
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def matches(self, config: TenantConfig) -> bool:
        """True while the handle still points at the tenant's configured document."""
        return (
            self.document_id == config.document_id
            and self.credentials_ref == config.credentials_ref
        )


class DocumentConnectionPool:
    """
    Process-wide pool of tenant document handles.

    STAGE-CP.0: Connection Pool Initialization

    Every structural change to the handle map happens in synchronous code;
    the only awaits are the document load (under a per-tenant creation lock)
    and the maintenance sleep.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        store: RemoteStore,
        max_handles: int = POOL_MAX_HANDLES,
        max_idle_seconds: float = POOL_MAX_IDLE_SECONDS,
        connect_attempts: int = POOL_CONNECT_ATTEMPTS,
        backoff_base: float = POOL_CONNECT_BACKOFF_BASE,
        backoff_max: float = POOL_CONNECT_BACKOFF_MAX,
        connect_timeout: float = QUEUE_REMOTE_TIMEOUT,
        maintenance_interval: float = POOL_MAINTENANCE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._store = store
        self.max_handles = max_handles
        self._max_idle_seconds = max_idle_seconds
        self._connect_attempts = connect_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._connect_timeout = connect_timeout
        self._maintenance_interval = maintenance_interval
        self._clock = clock
        self._sleep = sleep

        self._handles: dict[str, ConnectionHandle] = {}
        self._creation_locks: dict[str, asyncio.Lock] = {}
        self._maintenance_task: asyncio.Task | None = None

        self._hits = 0
        self._misses = 0
        self._created = 0
        self._evicted = 0
        self._broken = 0
        self._creation_failures = 0

        logger.info(
            "Connection pool initialized",
            stage="CP.0",
            max_handles=max_handles,
            max_idle_seconds=max_idle_seconds,
            connect_attempts=connect_attempts,
        )

    # =========================================================================
    # Acquire / release
    # =========================================================================

    def _resolve_enabled(self, tenant_id: str) -> TenantConfig:
        config = self._registry.resolve(tenant_id)
        if not config.enabled:
            self._drop(tenant_id, reason="tenant_disabled")
            raise TenantDisabledError(f"Tenant '{tenant_id}' is disabled", tenant_id=tenant_id)
        return config

    def _checkout(self, handle: ConnectionHandle) -> ConnectionHandle:
        handle.in_flight += 1
        handle.use_count += 1
        handle.state = HandleState.IN_USE
        handle.last_used_at = self._clock()
        return handle

    def _reusable(self, config: TenantConfig) -> ConnectionHandle | None:
        handle = self._handles.get(config.tenant_id)
        if handle is None:
            return None
        if handle.state is HandleState.BROKEN or not handle.matches(config):
            self._drop(config.tenant_id, reason="stale" if handle.state is not HandleState.BROKEN else "broken")
            return None
        return handle

    async def acquire(self, tenant_id: str) -> ConnectionHandle:
        """
        Get a live handle for a tenant, creating one if needed.

        STAGE-CP.1: Handle acquisition

        Raises:
            TenantNotFoundError / TenantDisabledError: Tenant gate
            ConnectionPoolExhaustedError: Pool full of in-use handles
            ConnectionFailedError: Document could not be loaded
        """
        config = self._resolve_enabled(tenant_id)

        handle = self._reusable(config)
        if handle is not None:
            self._hits += 1
            log_stage(logger, "CP.1", "Handle reused", level="debug", tenant_id=tenant_id)
            return self._checkout(handle)

        lock = self._creation_locks.setdefault(tenant_id, asyncio.Lock())
        async with lock:
            # Another task may have created it while we waited
            config = self._resolve_enabled(tenant_id)
            handle = self._reusable(config)
            if handle is not None:
                self._hits += 1
                return self._checkout(handle)

            self._misses += 1
            self._ensure_capacity()
            document = await self._load_document(config)
            self._ensure_capacity()

            now = self._clock()
            handle = ConnectionHandle(
                tenant_id=tenant_id,
                document_id=config.document_id,
                credentials_ref=config.credentials_ref,
                document=document,
                created_at=now,
                last_used_at=now,
            )
            self._handles[tenant_id] = handle
            self._created += 1
            log_stage(
                logger,
                "CP.1",
                "Handle created",
                tenant_id=tenant_id,
                handle_id=handle.handle_id,
                pool_size=len(self._handles),
            )
            return self._checkout(handle)

    def release(self, handle: ConnectionHandle, broken: bool = False) -> None:
        """
        Return a handle to the pool.

        STAGE-CP.3: Handle release

        A broken handle is evicted immediately; the next acquire for the
        tenant creates a fresh one.
        """
        handle.in_flight = max(0, handle.in_flight - 1)
        handle.last_used_at = self._clock()

        if broken:
            handle.state = HandleState.BROKEN
            self._broken += 1
            if self._handles.get(handle.tenant_id) is handle:
                self._drop(handle.tenant_id, reason="broken")
            return

        if handle.state is not HandleState.BROKEN and handle.in_flight == 0:
            handle.state = HandleState.IDLE

    @asynccontextmanager
    async def lease(self, tenant_id: str) -> AsyncIterator[ConnectionHandle]:
        """
        Acquire a handle for the duration of a block.

        Usage:
            async with pool.lease("acme") as handle:
                sheet = await handle.document.sheet("USERS")

        Auth and document-not-found errors raised inside the block mark the
        handle broken.
        """
        handle = await self.acquire(tenant_id)
        broken = False
        try:
            yield handle
        except HANDLE_BREAKING_ERRORS:
            broken = True
            raise
        finally:
            self.release(handle, broken=broken)

    # =========================================================================
    # Document loading
    # =========================================================================

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        log_stage(
            logger,
            "CP.2",
            "Document load failed, retrying",
            level="warning",
            attempt=retry_state.attempt_number,
            delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=str(error),
            error_kind=getattr(error, "kind", type(error).__name__),
        )

    async def _load_once(self, config: TenantConfig) -> DocHandle:
        try:
            return await asyncio.wait_for(
                self._store.load_document(config.document_id, config.credentials_ref),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(
                "Document load timed out",
                tenant_id=config.tenant_id,
                details={"timeout": self._connect_timeout},
            ) from e

    async def _load_document(self, config: TenantConfig) -> DocHandle:
        """
        Load the tenant's document, retrying transient failures.

        STAGE-CP.2: Document load
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._connect_attempts),
            wait=wait_exponential_jitter(
                initial=self._backoff_base,
                max=self._backoff_max,
                jitter=self._backoff_base,
            ),
            retry=retry_if_exception(_is_transient),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return await self._load_once(config)
        except (TenantSheetsError, RetryError) as e:
            self._creation_failures += 1
            log_stage(
                logger,
                "CP.2",
                "Document load failed",
                level="error",
                tenant_id=config.tenant_id,
                attempts=attempts,
                error=str(e),
            )
            raise ConnectionFailedError(
                f"Could not load the backing document of tenant '{config.tenant_id}'",
                tenant_id=config.tenant_id,
                details={
                    "attempts": attempts,
                    "cause": getattr(e, "kind", type(e).__name__),
                },
            ) from e

    # =========================================================================
    # Eviction
    # =========================================================================

    def _drop(self, tenant_id: str, reason: str) -> ConnectionHandle | None:
        handle = self._handles.pop(tenant_id, None)
        if handle is not None:
            self._evicted += 1
            log_stage(
                logger,
                "CP.4",
                "Handle evicted",
                tenant_id=tenant_id,
                handle_id=handle.handle_id,
                reason=reason,
                in_flight=handle.in_flight,
            )
        return handle

    def _ensure_capacity(self) -> None:
        """Evict the least-recently-used idle handle when the pool is full."""
        while len(self._handles) >= self.max_handles:
            idle = [h for h in self._handles.values() if h.in_flight == 0]
            if not idle:
                raise ConnectionPoolExhaustedError(
                    "Connection pool is full and every handle is in use",
                    details={"max_handles": self.max_handles},
                )
            oldest = min(idle, key=lambda h: h.last_used_at)
            self._drop(oldest.tenant_id, reason="lru")

    def evict_idle(self) -> int:
        """Evict idle handles unused for longer than the idle age."""
        now = self._clock()
        stale = [
            h.tenant_id for h in self._handles.values()
            if h.in_flight == 0 and now - h.last_used_at > self._max_idle_seconds
        ]
        for tenant_id in stale:
            self._drop(tenant_id, reason="idle")
        return len(stale)

    def clear_tenant(self, tenant_id: str) -> bool:
        return self._drop(tenant_id, reason="cleared") is not None

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self._maintenance_interval)
            evicted = self.evict_idle()
            if evicted:
                log_stage(logger, "CP.5", "Idle handles evicted", evicted=evicted)

    async def start(self) -> None:
        if self._maintenance_task is None and self._maintenance_interval > 0:
            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(), name="connection-pool-maintenance"
            )

    async def shutdown(self) -> None:
        """Stop maintenance and release every handle."""
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        for tenant_id in list(self._handles):
            self._drop(tenant_id, reason="shutdown")
        logger.info("Connection pool shut down", stage="CP.5")

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_handle(self, tenant_id: str) -> ConnectionHandle | None:
        return self._handles.get(tenant_id)

    def __len__(self) -> int:
        return len(self._handles)

    def stats(self) -> dict[str, Any]:
        in_use = sum(1 for h in self._handles.values() if h.in_flight > 0)
        return {
            "size": len(self._handles),
            "max_handles": self.max_handles,
            "in_use": in_use,
            "idle": len(self._handles) - in_use,
            "hits": self._hits,
            "misses": self._misses,
            "created": self._created,
            "evicted": self._evicted,
            "broken": self._broken,
            "creation_failures": self._creation_failures,
        }
