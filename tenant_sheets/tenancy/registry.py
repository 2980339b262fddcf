"""
Tenant Registry

Resolves tenant ids to TenantConfig snapshots and keeps them fresh.

STAGE-TR: Tenant Registry
-------------------------
TR.1: Refresh started / snapshot swapped
TR.2: Invalid entry skipped
TR.3: Refresh failed, last-known-good retained
TR.4: Resolution failure

Refresh is fail-open to the last-known-good snapshot: a transient source
error never empties the registry.

Author: System Architect
Date: 2026-10-19
"""

import asyncio
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from tenant_sheets.core.exceptions import TenantNotFoundError
from tenant_sheets.core.logging import get_logger, log_stage
from tenant_sheets.tenancy.models import TenantConfig
from tenant_sheets.tenancy.sources import TenantSource, parse_registry

logger = get_logger(__name__)


class TenantRegistry:
    """
    In-memory tenant registry refreshed periodically from a declarative source.

    The snapshot dict is never mutated in place; each refresh replaces it, so
    a resolve racing a refresh sees either the old or the new snapshot.
    """

    def __init__(self, source: TenantSource, refresh_interval: float = 60.0):
        self._source = source
        self._refresh_interval = refresh_interval
        self._snapshot: dict[str, TenantConfig] = {}
        self._refresh_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None

        self._last_refresh_at: datetime | None = None
        self._refresh_count = 0
        self._refresh_failures = 0
        self._last_error: str | None = None

    # =========================================================================
    # Lookup
    # =========================================================================

    def resolve(self, tenant_id: str) -> TenantConfig:
        """
        Return the current config of a tenant.

        Raises:
            TenantNotFoundError: If the tenant is not in the snapshot
        """
        config = self._snapshot.get(tenant_id)
        if config is None:
            log_stage(logger, "TR.4", "Unknown tenant", level="warning", tenant_id=tenant_id)
            raise TenantNotFoundError(f"Tenant '{tenant_id}' is not registered", tenant_id=tenant_id)
        return config

    def is_enabled(self, tenant_id: str) -> bool:
        """True only for registered, enabled tenants."""
        config = self._snapshot.get(tenant_id)
        return config is not None and config.enabled

    def all_tenants(self) -> list[TenantConfig]:
        return list(self._snapshot.values())

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self) -> bool:
        """
        Reload the registry from its source.

        Returns:
            True if a new snapshot was installed, False if the reload failed
            and the previous snapshot was kept.
        """
        async with self._refresh_lock:
            log_stage(logger, "TR.1", "Refreshing tenant registry", source=self._source.name)
            refreshed_at = datetime.now(timezone.utc)
            try:
                raw = await self._source.load()
                snapshot = parse_registry(raw, refreshed_at)
            except Exception as e:
                self._refresh_failures += 1
                self._last_error = str(e)
                log_stage(
                    logger,
                    "TR.3",
                    "Tenant registry refresh failed, keeping last-known-good snapshot",
                    level="error",
                    source=self._source.name,
                    error=str(e),
                    error_type=type(e).__name__,
                    tenants_retained=len(self._snapshot),
                )
                return False

            self._snapshot = snapshot
            self._last_refresh_at = refreshed_at
            self._refresh_count += 1
            self._last_error = None

            log_stage(
                logger,
                "TR.1",
                "Tenant registry refreshed",
                tenants=len(snapshot),
                enabled=sum(1 for t in snapshot.values() if t.enabled),
            )
            return True

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            await self.refresh()

    async def start(self) -> None:
        """Load the registry once and start periodic refresh."""
        await self.refresh()
        if self._refresh_task is None and self._refresh_interval > 0:
            self._refresh_task = asyncio.create_task(
                self._refresh_loop(), name="tenant-registry-refresh"
            )

    async def shutdown(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

    # =========================================================================
    # Introspection
    # =========================================================================

    def stats(self) -> dict[str, Any]:
        """Return registry statistics (tenant counts per plan and refresh health)."""
        tenants = self._snapshot.values()
        enabled = sum(1 for t in tenants if t.enabled)
        return {
            "total": len(self._snapshot),
            "enabled": enabled,
            "disabled": len(self._snapshot) - enabled,
            "plans": dict(Counter(t.plan.value for t in tenants)),
            "source": self._source.name,
            "last_refresh_at": self._last_refresh_at.isoformat() if self._last_refresh_at else None,
            "refresh_count": self._refresh_count,
            "refresh_failures": self._refresh_failures,
            "last_error": self._last_error,
        }
