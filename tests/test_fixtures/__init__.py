"""
Test Fixtures Package

Shared test utilities and helpers for consistent testing across all modules.
"""

from .clock_factory import FakeClock, SleepRecorder
from .store_factory import StoreTestFactory
from .tenant_factory import DEFAULT_SHEETS, TenantTestFactory

__all__ = ["FakeClock", "SleepRecorder", "StoreTestFactory", "TenantTestFactory", "DEFAULT_SHEETS"]
