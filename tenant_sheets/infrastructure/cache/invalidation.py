"""
Cache Invalidation

Maps a completed write to the cache entries it makes stale and removes
them synchronously. The batch queue calls ``on_write_completed`` before it
resolves the write's future, so a caller told "succeeded" can never read a
cached value that predates the write.

Rules (per operation kind, relative to the written sheet S):
    every kind -> ROWS:S:*, CONFIG:S:*, SHEET_INFO:S:*   (all views of S)
               -> ANALYTICS:*                             (tenant-wide aggregates)
then any explicit ``affected_keys``, then registered dependents (cascading).

STAGE-CI: Cache Invalidation
----------------------------
CI.1: Write invalidated
CI.2: Dependency cascade
CI.3: Tenant flushed
"""

from collections import Counter
from typing import Any

from tenant_sheets.core.config.constants import (
    CACHE_KEY_SEPARATOR,
    INVALIDATION_MAX_CASCADE_DEPTH,
    OperationKind,
    ResourceKind,
)
from tenant_sheets.core.exceptions import CacheKeyError
from tenant_sheets.core.logging import get_logger, log_stage
from tenant_sheets.infrastructure.cache.cache_manager import CacheKey, CacheManager

logger = get_logger(__name__)

_SHEET_SCOPED = (ResourceKind.ROWS, ResourceKind.CONFIG, ResourceKind.SHEET_INFO)

INVALIDATION_RULES: dict[OperationKind, tuple[ResourceKind, ...]] = {
    OperationKind.ADD_ROWS: _SHEET_SCOPED,
    OperationKind.UPDATE_ROW: _SHEET_SCOPED,
    OperationKind.DELETE_ROW: _SHEET_SCOPED,
}

TENANT_WIDE_KINDS: tuple[ResourceKind, ...] = (ResourceKind.ANALYTICS,)


class CacheInvalidator:
    """
    Write-driven invalidation with a dependency graph for derived entries.

    Dependencies are registered as ``source -> dependent`` where ``source``
    is a key or a key prefix; when anything matching ``source`` is
    invalidated, ``dependent`` goes too. Both sides must live in the same
    tenant namespace.
    """

    def __init__(self, cache: CacheManager, max_cascade_depth: int = INVALIDATION_MAX_CASCADE_DEPTH):
        self._cache = cache
        self._max_depth = max_cascade_depth
        self._dependencies: dict[str, set[str]] = {}

        self._generations: Counter = Counter()
        self._writes = Counter()
        self._keys_removed = 0
        self._cascades = 0

    # =========================================================================
    # Dependencies
    # =========================================================================

    def add_dependency(self, source: CacheKey | str, dependent: CacheKey | str) -> None:
        source, dependent = str(source), str(dependent)
        if source.split(CACHE_KEY_SEPARATOR, 1)[0] != dependent.split(CACHE_KEY_SEPARATOR, 1)[0]:
            raise CacheKeyError(
                "Cache dependencies cannot cross tenants",
                details={"source": source, "dependent": dependent},
            )
        self._dependencies.setdefault(source, set()).add(dependent)

    def remove_dependency(self, source: CacheKey | str, dependent: CacheKey | str) -> None:
        dependents = self._dependencies.get(str(source))
        if dependents is not None:
            dependents.discard(str(dependent))
            if not dependents:
                del self._dependencies[str(source)]

    def _cascade(self, invalidated: list[str]) -> int:
        """Invalidate dependents of everything matching ``invalidated``, breadth-first."""
        removed = 0
        visited: set[str] = set(invalidated)
        frontier = list(invalidated)
        depth = 0
        while frontier and depth < self._max_depth:
            depth += 1
            next_frontier = []
            for pattern in frontier:
                for source, dependents in self._dependencies.items():
                    if not (source == pattern or source.startswith(pattern) or pattern.startswith(source)):
                        continue
                    for dependent in dependents:
                        if dependent in visited:
                            continue
                        visited.add(dependent)
                        removed += int(self._cache.invalidate(dependent))
                        next_frontier.append(dependent)
            frontier = next_frontier

        if frontier:
            log_stage(
                logger,
                "CI.2",
                "Dependency cascade stopped at max depth",
                level="warning",
                max_depth=self._max_depth,
                pending=len(frontier),
            )
        if removed:
            self._cascades += 1
            log_stage(logger, "CI.2", "Dependency cascade", removed=removed, depth=depth)
        return removed

    def generation(self, tenant_id: str, sheet_title: str | None = None) -> tuple[int, int]:
        """
        Write generation of a sheet and of its tenant.

        A reader captures it before a remote fetch and only caches the
        result if it is unchanged afterwards, so a fetch that raced a write
        cannot repopulate the cache with pre-write data.
        """
        return (self._generations[(tenant_id, sheet_title)], self._generations[(tenant_id, None)])

    # =========================================================================
    # Write events
    # =========================================================================

    def on_write_completed(
        self,
        tenant_id: str,
        sheet_title: str,
        operation_kind: OperationKind,
        affected_keys: tuple[CacheKey | str, ...] | list[CacheKey | str] = (),
    ) -> int:
        """
        Invalidate everything the write made stale.

        Returns:
            Number of cache entries removed
        """
        namespace = f"{tenant_id}{CACHE_KEY_SEPARATOR}"
        explicit = [str(k) for k in affected_keys]
        foreign = [k for k in explicit if not k.startswith(namespace)]
        if foreign:
            raise CacheKeyError(
                "Affected keys must belong to the written tenant",
                tenant_id=tenant_id,
                details={"keys": foreign},
            )

        self._generations[(tenant_id, sheet_title)] += 1
        self._generations[(tenant_id, None)] += 1

        prefixes = [CacheKey.sheet_prefix(kind, sheet_title) for kind in INVALIDATION_RULES[operation_kind]]
        prefixes += [CacheKey.sheet_prefix(kind) for kind in TENANT_WIDE_KINDS]

        removed = sum(self._cache.invalidate_pattern(tenant_id, p) for p in prefixes)
        removed += sum(int(self._cache.invalidate(k)) for k in explicit)
        removed += self._cascade([namespace + p for p in prefixes] + explicit)

        self._writes[operation_kind.value] += 1
        self._keys_removed += removed
        log_stage(
            logger,
            "CI.1",
            "Write invalidated cache",
            tenant_id=tenant_id,
            sheet=sheet_title,
            operation=operation_kind.value,
            removed=removed,
        )
        return removed

    def invalidate_tenant(self, tenant_id: str) -> int:
        """Drop every cached entry and dependency of a tenant."""
        self._generations[(tenant_id, None)] += 1
        removed = self._cache.invalidate_tenant(tenant_id)
        namespace = f"{tenant_id}{CACHE_KEY_SEPARATOR}"
        for source in [s for s in self._dependencies if s.startswith(namespace)]:
            del self._dependencies[source]
        self._keys_removed += removed
        log_stage(logger, "CI.3", "Tenant cache flushed", tenant_id=tenant_id, removed=removed)
        return removed

    def stats(self) -> dict[str, Any]:
        return {
            "writes": dict(self._writes),
            "keys_removed": self._keys_removed,
            "cascades": self._cascades,
            "dependencies": sum(len(d) for d in self._dependencies.values()),
        }
