"""
Composition root.

Builds every component once, from one Settings object, and wires them into
a SheetsService. The pool and the cache are process-wide objects because
the service owns them, not because they are module globals: two services
built here share nothing.

Usage:
    from tenant_sheets.application.container import create_sheets_service

    service = create_sheets_service()          # settings from the environment
    await service.start()
    ...
    await service.shutdown()
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable

from tenant_sheets.application.services.sheets_service import SheetsService
from tenant_sheets.config.settings import Settings, get_settings
from tenant_sheets.core.config.constants import STORE_BACKEND_MEMORY
from tenant_sheets.core.logging import get_logger, setup_logging
from tenant_sheets.core.resilience.batch_queue import BackoffPolicy, BatchQueueManager
from tenant_sheets.core.resilience.connection_pool_manager import DocumentConnectionPool
from tenant_sheets.infrastructure.cache.cache_manager import CacheManager, build_policies
from tenant_sheets.infrastructure.cache.invalidation import CacheInvalidator
from tenant_sheets.infrastructure.monitoring.metrics_collector import MetricsCollector
from tenant_sheets.infrastructure.store.base import RemoteStore
from tenant_sheets.infrastructure.store.memory_store import MemoryStore
from tenant_sheets.rate_limiting.rate_limiter import TokenBucketRateLimiter
from tenant_sheets.tenancy.registry import TenantRegistry
from tenant_sheets.tenancy.sources import EnvTenantSource, FileTenantSource, TenantSource

logger = get_logger(__name__)


def build_tenant_source(settings: Settings) -> TenantSource:
    """A registry file wins over inline JSON."""
    registry = settings.registry
    if registry.TENANT_REGISTRY_FILE:
        return FileTenantSource(registry.TENANT_REGISTRY_FILE)
    return EnvTenantSource(
        registry.TENANT_REGISTRY_JSON,
        default_tenant_id=registry.DEFAULT_TENANT_ID,
        default_document_id=registry.DEFAULT_DOCUMENT_ID,
        default_credentials_ref=registry.DEFAULT_CREDENTIALS_REF,
    )


def build_store(settings: Settings) -> RemoteStore:
    store_settings = settings.store
    if store_settings.STORE_BACKEND == STORE_BACKEND_MEMORY:
        return MemoryStore()

    # gspread is only imported when the Google backend is selected
    from tenant_sheets.infrastructure.store.gspread_store import GSpreadStore

    return GSpreadStore(
        default_key_file=store_settings.GOOGLE_SERVICE_ACCOUNT_FILE,
        credentials_dir=store_settings.CREDENTIALS_DIR,
    )


def create_sheets_service(
    settings: Settings | None = None,
    store: RemoteStore | None = None,
    source: TenantSource | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    configure_logging: bool = True,
) -> SheetsService:
    """
    Build a fully wired SheetsService.

    Args:
        settings: Configuration (defaults to the environment)
        store: Remote store (defaults to the configured backend)
        source: Tenant registry source (defaults to the configured one)
        clock: Monotonic clock shared by every time-based component
        sleep: Sleep used for retry backoff and throttle waits
        rng: Jitter source of the queue backoff
        configure_logging: Apply LOG_LEVEL and LOG_FORMAT to structlog
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings.logging.LOG_LEVEL, settings.logging.LOG_FORMAT)
    store = store or build_store(settings)

    registry_settings = settings.registry
    rate_settings = settings.rate_limit
    pool_settings = settings.pool
    queue_settings = settings.queue
    cache_settings = settings.cache

    metrics = MetricsCollector(
        app_name=settings.APP_NAME,
        app_version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )
    registry = TenantRegistry(
        source or build_tenant_source(settings),
        refresh_interval=registry_settings.TENANT_REFRESH_INTERVAL,
    )
    rate_limiter = TokenBucketRateLimiter(
        plan_limits=rate_settings.plan_limits(),
        ip_capacity=rate_settings.RATE_LIMIT_IP_CAPACITY,
        ip_refill_per_second=rate_settings.RATE_LIMIT_IP_REFILL,
        idle_seconds=rate_settings.RATE_LIMIT_IDLE_SECONDS,
        clock=clock,
    )
    pool = DocumentConnectionPool(
        registry,
        store,
        max_handles=pool_settings.POOL_MAX_HANDLES,
        max_idle_seconds=pool_settings.POOL_MAX_IDLE_SECONDS,
        connect_attempts=pool_settings.POOL_CONNECT_ATTEMPTS,
        backoff_base=pool_settings.POOL_CONNECT_BACKOFF_BASE,
        backoff_max=pool_settings.POOL_CONNECT_BACKOFF_MAX,
        connect_timeout=queue_settings.QUEUE_REMOTE_TIMEOUT,
        maintenance_interval=pool_settings.POOL_MAINTENANCE_INTERVAL,
        clock=clock,
        sleep=sleep,
    )
    cache = CacheManager(
        policies=build_policies(cache_settings.ttl_map()),
        max_entries=cache_settings.CACHE_MAX_ENTRIES,
        max_bytes=cache_settings.CACHE_MAX_BYTES,
        sweep_interval=cache_settings.CACHE_SWEEP_INTERVAL,
        size_unknown_policy=cache_settings.CACHE_SIZE_UNKNOWN_POLICY,
        clock=clock,
    )
    invalidator = CacheInvalidator(cache)
    queue = BatchQueueManager(
        pool,
        rate_limiter,
        registry,
        invalidator,
        metrics=metrics,
        batch_max_rows=queue_settings.QUEUE_BATCH_MAX_ROWS,
        batch_window=queue_settings.QUEUE_BATCH_WINDOW,
        max_attempts=queue_settings.QUEUE_MAX_ATTEMPTS,
        backoff=BackoffPolicy(
            base=queue_settings.QUEUE_BACKOFF_BASE,
            multiplier=queue_settings.QUEUE_BACKOFF_MULTIPLIER,
            max_delay=queue_settings.QUEUE_BACKOFF_MAX,
            jitter=queue_settings.QUEUE_BACKOFF_JITTER,
            rng=rng,
        ),
        remote_timeout=queue_settings.QUEUE_REMOTE_TIMEOUT,
        max_depth=queue_settings.QUEUE_MAX_DEPTH,
        worker_budget=queue_settings.QUEUE_WORKER_BUDGET,
        throttle_max_wait=queue_settings.QUEUE_THROTTLE_MAX_WAIT,
        clock=clock,
        sleep=sleep,
    )

    logger.info(
        "Sheets service wired",
        stage="SV.0",
        environment=settings.ENVIRONMENT,
        store=type(store).__name__,
    )
    return SheetsService(
        registry=registry,
        rate_limiter=rate_limiter,
        pool=pool,
        cache=cache,
        invalidator=invalidator,
        queue=queue,
        metrics=metrics,
        remote_timeout=queue_settings.QUEUE_REMOTE_TIMEOUT,
        clock=clock,
    )
