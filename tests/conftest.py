"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.

Time never passes on its own in these tests: every component is built with
a FakeClock and a SleepRecorder, so TTLs, token refill and retry backoff are
driven explicitly.
"""

import os
import sys

import pytest

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from tests.test_fixtures import FakeClock, SleepRecorder, TenantTestFactory  # noqa: E402

from tenant_sheets.application.container import create_sheets_service  # noqa: E402
from tenant_sheets.config.settings import Settings  # noqa: E402
from tenant_sheets.core.logging import clear_log_context  # noqa: E402
from tenant_sheets.tenancy.registry import TenantRegistry  # noqa: E402
from tenant_sheets.tenancy.sources import StaticTenantSource  # noqa: E402


# ============================================================================
# Time Fixtures
# ============================================================================


@pytest.fixture
def clock():
    """Deterministic monotonic clock."""
    return FakeClock()


@pytest.fixture
def sleep(clock):
    """Sleep that records delays and advances the fake clock."""
    return SleepRecorder(clock)


@pytest.fixture(autouse=True)
def _reset_log_context():
    """Correlation ids must not leak between tests."""
    yield
    clear_log_context()


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_settings():
    """
    Settings for wired services.

    Background loops are disabled and the coalescing window is closed so
    tests only wait on what they trigger.
    """
    return Settings(
        ENVIRONMENT="development",
        STORE_BACKEND="memory",
        TENANT_REFRESH_INTERVAL=0,
        POOL_MAINTENANCE_INTERVAL=0,
        CACHE_SWEEP_INTERVAL=0,
        QUEUE_BATCH_WINDOW=0.0,
        QUEUE_BACKOFF_JITTER=0.1,
    )


# ============================================================================
# Tenancy / Store Fixtures
# ============================================================================


@pytest.fixture
def tenant_source():
    """t1 (pro), t2 (starter), t3 (disabled)."""
    return StaticTenantSource(TenantTestFactory.registry_raw())


@pytest.fixture
async def registry(tenant_source):
    """Loaded tenant registry without a refresh loop."""
    registry = TenantRegistry(tenant_source, refresh_interval=0)
    await registry.refresh()
    return registry


@pytest.fixture
def memory_store():
    """In-memory documents doc-t1, doc-t2 and doc-t3 with USERS, CONFIG and EVENTS sheets."""
    return TenantTestFactory.store()


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
async def service(test_settings, memory_store, tenant_source, clock, sleep):
    """
    Fully wired SheetsService over the in-memory store.

    Backoff jitter is pinned to zero through the rng.
    """
    service = create_sheets_service(
        settings=test_settings,
        store=memory_store,
        source=tenant_source,
        clock=clock,
        sleep=sleep,
        rng=lambda: 0.0,
    )
    await service.start()
    yield service
    await service.shutdown(drain=False)
