from tenant_sheets.infrastructure.cache.cache_manager import (
    MISS,
    CacheEntry,
    CacheKey,
    CacheManager,
    CachePolicy,
    CacheStats,
    LRUStorage,
    build_policies,
    hash_params,
)
from tenant_sheets.infrastructure.cache.invalidation import (
    INVALIDATION_RULES,
    CacheInvalidator,
)

__all__ = [
    "INVALIDATION_RULES",
    "MISS",
    "CacheEntry",
    "CacheInvalidator",
    "CacheKey",
    "CacheManager",
    "CachePolicy",
    "CacheStats",
    "LRUStorage",
    "build_policies",
    "hash_params",
]
