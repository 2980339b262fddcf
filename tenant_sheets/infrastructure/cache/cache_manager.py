#!/usr/bin/env python3
"""
Tenant-Namespaced TTL/LRU Cache

Architecture:
    CacheManager (Public API)
        ├── LRUStorage (OrderedDict, entry + byte bounds)
        ├── CachePolicy map (ResourceKind -> TTL)
        ├── CacheObserver (per-tenant metrics & logging)
        └── Sweep task (periodic expiry)

Keys are ``tenantId:resourceKind:sheetTitle:paramsHash``. Every operation
that removes entries by pattern is scoped to a tenant namespace, so no
tenant can address or evict another tenant's entries.

All methods except start/shutdown are synchronous: the entry set is only
mutated in code paths that never yield to the event loop.

STAGE-C: Cache
--------------
C.1: Hit
C.2: Miss / expired
C.3: Set
C.4: Invalidated
C.5: LRU eviction
C.6: Sweep

Author: System Architect
Date: 2026-10-19
"""

import asyncio
import hashlib
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import orjson

from tenant_sheets.core.config.constants import (
    CACHE_KEY_SEPARATOR,
    CACHE_MAX_BYTES,
    CACHE_MAX_ENTRIES,
    CACHE_SWEEP_INTERVAL,
    DEFAULT_RESOURCE_TTLS,
    TENANT_ID_PATTERN,
    ResourceKind,
    SizeUnknownPolicy,
)
from tenant_sheets.core.exceptions import CacheKeyError
from tenant_sheets.core.logging import get_logger, log_stage

logger = get_logger(__name__)


class _Miss:
    """Sentinel returned by CacheManager.get when nothing usable is cached."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


# =============================================================================
# KEYS & POLICIES
# =============================================================================


def hash_params(params: Any | None) -> str:
    """
    Stable short hash of read parameters.

    ``None`` (an unfiltered read) hashes to ``"all"`` so the key of the plain
    "all rows" view is readable in logs.
    """
    if params is None:
        return "all"
    payload = orjson.dumps(params, option=orjson.OPT_SORT_KEYS)
    return hashlib.md5(payload).hexdigest()[:16]


def _check_tenant(tenant_id: str) -> None:
    if not TENANT_ID_PATTERN.match(tenant_id or ""):
        raise CacheKeyError(
            "Cache keys need a valid tenant namespace", details={"tenant_id": tenant_id}
        )


@dataclass(frozen=True)
class CacheKey:
    """
    Namespaced cache key.

    The sheet title is percent-encoded so that the prefix of sheet "A" never
    matches the keys of sheet "A:B".
    """

    tenant_id: str
    kind: ResourceKind
    sheet_title: str
    params_hash: str = "all"

    def __post_init__(self):
        _check_tenant(self.tenant_id)

    @classmethod
    def build(
        cls,
        tenant_id: str,
        kind: ResourceKind,
        sheet_title: str,
        params: Any | None = None,
    ) -> "CacheKey":
        return cls(tenant_id, kind, sheet_title, hash_params(params))

    @staticmethod
    def sheet_prefix(kind: ResourceKind, sheet_title: str | None = None) -> str:
        """Prefix (relative to the tenant namespace) of one kind, optionally one sheet."""
        if sheet_title is None:
            return f"{kind.value}{CACHE_KEY_SEPARATOR}"
        return f"{kind.value}{CACHE_KEY_SEPARATOR}{quote(sheet_title, safe='')}{CACHE_KEY_SEPARATOR}"

    def __str__(self) -> str:
        return f"{self.tenant_id}{CACHE_KEY_SEPARATOR}{self.sheet_prefix(self.kind, self.sheet_title)}{self.params_hash}"


@dataclass(frozen=True)
class CachePolicy:
    """Caching policy of one resource kind."""

    ttl_seconds: float


def build_policies(ttls: dict[ResourceKind, float] | None = None) -> dict[ResourceKind, CachePolicy]:
    """Policy map for every ResourceKind; missing kinds fall back to the defaults."""
    merged = {**DEFAULT_RESOURCE_TTLS, **(ttls or {})}
    return {kind: CachePolicy(ttl_seconds=merged[kind]) for kind in ResourceKind}


@dataclass
class CacheEntry:
    key: str
    tenant_id: str
    value: Any
    inserted_at: float
    expires_at: float
    size_estimate: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    invalidations: int = 0
    sets: int = 0
    size: int = 0
    bytes: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "invalidations": self.invalidations,
            "sets": self.sets,
            "size": self.size,
            "bytes": self.bytes,
            "hit_ratio": round(self.hit_ratio, 4),
        }


# =============================================================================
# LAYER 1: STORAGE
# =============================================================================


class LRUStorage:
    """
    In-memory LRU storage with an entry bound and an optional byte bound.

    - OrderedDict keeps recency order: oldest first, newest last
    - ``get`` moves the entry to the end (most recently used)
    - ``put`` evicts from the front until both bounds hold
    """

    def __init__(self, max_entries: int = CACHE_MAX_ENTRIES, max_bytes: int = CACHE_MAX_BYTES):
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._bytes = 0

    def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    def peek(self, key: str) -> CacheEntry | None:
        """Get without touching recency."""
        return self._entries.get(key)

    def put(self, entry: CacheEntry) -> list[CacheEntry]:
        """Insert or replace an entry; return the entries evicted to make room."""
        previous = self._entries.pop(entry.key, None)
        if previous is not None:
            self._bytes -= previous.size_estimate
        self._entries[entry.key] = entry
        self._bytes += entry.size_estimate

        evicted = []
        while len(self._entries) > 1 and (
            len(self._entries) > self._max_entries
            or (self._max_bytes and self._bytes > self._max_bytes)
        ):
            _, oldest = self._entries.popitem(last=False)
            self._bytes -= oldest.size_estimate
            evicted.append(oldest)
        return evicted

    def pop(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._bytes -= entry.size_estimate
        return entry

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return [k for k in self._entries if k.startswith(prefix)]

    def entries(self) -> Iterator[CacheEntry]:
        return iter(list(self._entries.values()))

    def clear(self) -> None:
        self._entries.clear()
        self._bytes = 0

    def keys(self) -> list[str]:
        """Keys in LRU order (oldest first, newest last)."""
        return list(self._entries)

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def bytes(self) -> int:
        return self._bytes

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


# =============================================================================
# LAYER 2: OBSERVABILITY
# =============================================================================


class CacheObserver:
    """
    Tracks cache metrics (global and per tenant) and logs operations.

    Responsibility: All side effects (logging, metrics); the storage stays pure.
    """

    def __init__(self, logger_instance=None):
        self._logger = logger_instance or logger
        self.totals = CacheStats()
        self._tenants: dict[str, CacheStats] = {}

    def _tenant(self, tenant_id: str) -> CacheStats:
        stats = self._tenants.get(tenant_id)
        if stats is None:
            stats = self._tenants[tenant_id] = CacheStats()
        return stats

    def _bump(self, tenant_id: str, counter: str, amount: int = 1) -> None:
        setattr(self.totals, counter, getattr(self.totals, counter) + amount)
        tenant = self._tenant(tenant_id)
        setattr(tenant, counter, getattr(tenant, counter) + amount)

    def hit(self, key: str, tenant_id: str) -> None:
        self._bump(tenant_id, "hits")
        log_stage(self._logger, "C.1", "Cache hit", level="debug", cache_key=key)

    def miss(self, key: str, tenant_id: str, expired: bool = False) -> None:
        self._bump(tenant_id, "misses")
        if expired:
            self._bump(tenant_id, "expirations")
        log_stage(self._logger, "C.2", "Cache miss", level="debug", cache_key=key, expired=expired)

    def stored(self, key: str, tenant_id: str, ttl: float, size: int) -> None:
        self._bump(tenant_id, "sets")
        log_stage(self._logger, "C.3", "Cache set", level="debug", cache_key=key, ttl=ttl, size=size)

    def invalidated(self, tenant_id: str, count: int, pattern: str) -> None:
        if count:
            self._bump(tenant_id, "invalidations", count)
        log_stage(self._logger, "C.4", "Cache invalidated", level="debug", pattern=pattern, removed=count)

    def evicted(self, entry: CacheEntry) -> None:
        self._bump(entry.tenant_id, "evictions")
        log_stage(self._logger, "C.5", "LRU eviction", level="debug", cache_key=entry.key)

    def swept(self, entries: list[CacheEntry]) -> None:
        for entry in entries:
            self._bump(entry.tenant_id, "expirations")
        if entries:
            log_stage(self._logger, "C.6", "Expired entries swept", removed=len(entries))

    def tenant_stats(self, tenant_id: str) -> CacheStats:
        return self._tenants.get(tenant_id, CacheStats())

    def forget_tenant(self, tenant_id: str) -> None:
        self._tenants.pop(tenant_id, None)


# =============================================================================
# PUBLIC API
# =============================================================================


class CacheManager:
    """
    Tenant-namespaced read cache with TTL expiry and LRU eviction.

    Usage:
        cache = CacheManager(policies=build_policies({ResourceKind.ROWS: 15}))
        key = CacheKey.build("acme", ResourceKind.ROWS, "USERS")
        rows = cache.get(key)
        if rows is MISS:
            rows = await load()
            cache.set(key, rows)
    """

    def __init__(
        self,
        policies: dict[ResourceKind, CachePolicy] | None = None,
        max_entries: int = CACHE_MAX_ENTRIES,
        max_bytes: int = CACHE_MAX_BYTES,
        sweep_interval: float = CACHE_SWEEP_INTERVAL,
        size_unknown_policy: SizeUnknownPolicy = SizeUnknownPolicy.ADMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._policies = policies or build_policies()
        self._storage = LRUStorage(max_entries=max_entries, max_bytes=max_bytes)
        self._observer = CacheObserver()
        self._sweep_interval = sweep_interval
        self._size_unknown_policy = size_unknown_policy
        self._clock = clock
        self._sweep_task: asyncio.Task | None = None
        self._rejected_unsized = 0

        logger.info(
            "Cache manager initialized",
            stage="C.0",
            max_entries=max_entries,
            max_bytes=max_bytes,
            ttls={kind.value: p.ttl_seconds for kind, p in self._policies.items()},
            size_unknown_policy=size_unknown_policy.value,
        )

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    def ttl_for(self, kind: ResourceKind) -> float:
        return self._policies[kind].ttl_seconds

    def get(self, key: CacheKey) -> Any:
        """
        Return the cached value, or ``MISS``.

        An entry past its ``expires_at`` is removed and reported as a miss even
        if the sweep has not run yet.
        """
        skey = str(key)
        entry = self._storage.get(skey)
        if entry is None:
            self._observer.miss(skey, key.tenant_id)
            return MISS
        if entry.is_expired(self._clock()):
            self._storage.pop(skey)
            self._observer.miss(skey, key.tenant_id, expired=True)
            return MISS
        self._observer.hit(skey, key.tenant_id)
        return entry.value

    def set(self, key: CacheKey, value: Any, ttl: float | None = None) -> bool:
        """
        Cache ``value`` under ``key``.

        ``ttl`` defaults to the policy of the key's resource kind.

        Returns:
            False when the value was not cached (size unknown under the
            REJECT policy), True otherwise.
        """
        skey = str(key)
        ttl = self.ttl_for(key.kind) if ttl is None else ttl
        size = self._estimate_size(value)
        if size is None:
            if self._size_unknown_policy is SizeUnknownPolicy.REJECT:
                self._rejected_unsized += 1
                log_stage(
                    logger, "C.3", "Value size unknown, not cached", level="warning", cache_key=skey
                )
                return False
            size = 0

        now = self._clock()
        entry = CacheEntry(
            key=skey,
            tenant_id=key.tenant_id,
            value=value,
            inserted_at=now,
            expires_at=now + ttl,
            size_estimate=size,
        )
        for evicted in self._storage.put(entry):
            self._observer.evicted(evicted)
        self._observer.stored(skey, key.tenant_id, ttl, size)
        return True

    def invalidate(self, key: CacheKey | str) -> bool:
        skey = str(key)
        removed = self._storage.pop(skey)
        if removed is not None:
            self._observer.invalidated(removed.tenant_id, 1, skey)
        return removed is not None

    def invalidate_pattern(self, tenant_id: str, prefix: str = "") -> int:
        """
        Remove every entry of ``tenant_id`` whose key (after the tenant
        namespace) starts with ``prefix``.

        Returns:
            Number of entries removed
        """
        _check_tenant(tenant_id)
        pattern = f"{tenant_id}{CACHE_KEY_SEPARATOR}{prefix}"
        keys = self._storage.keys_with_prefix(pattern)
        for k in keys:
            self._storage.pop(k)
        self._observer.invalidated(tenant_id, len(keys), pattern)
        return len(keys)

    def invalidate_tenant(self, tenant_id: str) -> int:
        return self.invalidate_pattern(tenant_id, "")

    def contains(self, key: CacheKey | str) -> bool:
        """True if a non-expired entry exists. Does not count as a hit or touch LRU order."""
        entry = self._storage.peek(str(key))
        return entry is not None and not entry.is_expired(self._clock())

    def clear(self) -> None:
        self._storage.clear()

    def _estimate_size(self, value: Any) -> int | None:
        try:
            return len(orjson.dumps(value))
        except TypeError:
            return None

    # -------------------------------------------------------------------------
    # Expiry sweep
    # -------------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Remove every expired entry now. Returns the number removed."""
        now = self._clock()
        expired = [e for e in self._storage.entries() if e.is_expired(now)]
        for entry in expired:
            self._storage.pop(entry.key)
        self._observer.swept(expired)
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep_expired()
            except Exception as e:
                log_stage(logger, "C.6", "Cache sweep failed", level="error", error=str(e))

    async def start(self) -> None:
        if self._sweep_task is None and self._sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="cache-sweep")

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.clear()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def stats(self) -> CacheStats:
        totals = self._observer.totals
        return CacheStats(
            hits=totals.hits,
            misses=totals.misses,
            evictions=totals.evictions,
            expirations=totals.expirations,
            invalidations=totals.invalidations,
            sets=totals.sets,
            size=len(self._storage),
            bytes=self._storage.bytes,
        )

    def tenant_stats(self, tenant_id: str) -> dict[str, Any]:
        """Per-tenant counters plus the tenant's current entry count."""
        stats = self._observer.tenant_stats(tenant_id)
        prefix = f"{tenant_id}{CACHE_KEY_SEPARATOR}"
        entries = [e for e in self._storage.entries() if e.key.startswith(prefix)]
        return {
            **stats.to_dict(),
            "size": len(entries),
            "bytes": sum(e.size_estimate for e in entries),
        }

    def keys(self) -> list[str]:
        return self._storage.keys()

    def health_check(self) -> dict[str, Any]:
        """
        Report cache health.

        Healthy when the entry bound holds and the sweep task (if started)
        is still running.
        """
        sweeper_ok = self._sweep_task is None or not self._sweep_task.done()
        within_bounds = len(self._storage) <= self._storage.max_entries
        return {
            "healthy": sweeper_ok and within_bounds,
            "size": len(self._storage),
            "max_entries": self._storage.max_entries,
            "sweeper_running": self._sweep_task is not None and not self._sweep_task.done(),
            "rejected_unsized": self._rejected_unsized,
        }
