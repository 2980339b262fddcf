"""
Unit Tests for Configuration Settings

Tests the settings loading, validation, section grouping and default values.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from tenant_sheets.config.settings import (
    BatchQueueSettings,
    CacheSettings,
    Settings,
    get_settings,
    reload_settings,
)
from tenant_sheets.core.config.constants import ResourceKind, SizeUnknownPolicy, TenantPlan


@pytest.mark.unit
class TestSettingsDefaults:
    """Test default values of every section."""

    def test_settings_can_be_created(self):
        """Test that Settings can be instantiated."""
        settings = Settings()
        assert settings is not None

    def test_settings_exposes_sections(self):
        """Test that Settings groups its fields into sections."""
        settings = Settings()

        assert settings.queue.QUEUE_MAX_ATTEMPTS == settings.QUEUE_MAX_ATTEMPTS
        assert settings.cache.CACHE_MAX_ENTRIES == settings.CACHE_MAX_ENTRIES
        assert settings.pool.POOL_MAX_HANDLES == settings.POOL_MAX_HANDLES
        assert settings.store.STORE_BACKEND in ("gspread", "memory")
        assert settings.logging.LOG_LEVEL in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

    def test_queue_retry_policy_defaults(self):
        """Test that the write retry policy matches the documented defaults."""
        queue = BatchQueueSettings()

        assert queue.QUEUE_MAX_ATTEMPTS == 4
        assert queue.QUEUE_BACKOFF_BASE == 0.2
        assert queue.QUEUE_BACKOFF_MULTIPLIER == 2.0
        assert queue.QUEUE_REMOTE_TIMEOUT == 10.0

    def test_cache_ttl_map_covers_every_kind(self):
        """Test that every resource kind has a TTL."""
        ttls = CacheSettings().ttl_map()

        assert set(ttls) == set(ResourceKind)
        assert ttls[ResourceKind.ROWS] == 15.0
        assert all(ttl > 0 for ttl in ttls.values())

    def test_plan_limits_cover_every_plan(self):
        """Test that every tenant plan has a bucket size and refill rate."""
        limits = Settings().rate_limit.plan_limits()

        assert set(limits) == set(TenantPlan)
        for capacity, refill in limits.values():
            assert capacity > 0
            assert refill > 0

    def test_size_unknown_policy_defaults_to_admit(self):
        """Test that unsized cache values are admitted by default."""
        assert CacheSettings().CACHE_SIZE_UNKNOWN_POLICY is SizeUnknownPolicy.ADMIT


@pytest.mark.unit
class TestSettingsOverrides:
    """Test environment and keyword overrides."""

    def test_environment_overrides_default(self):
        """Test that environment variables override defaults."""
        with patch.dict(os.environ, {"QUEUE_MAX_ATTEMPTS": "6", "CACHE_TTL_ROWS": "30"}):
            settings = Settings()

        assert settings.queue.QUEUE_MAX_ATTEMPTS == 6
        assert settings.cache.ttl_map()[ResourceKind.ROWS] == 30.0

    def test_keyword_overrides_win(self):
        """Test that explicit keyword arguments win over the environment."""
        with patch.dict(os.environ, {"QUEUE_BATCH_WINDOW": "1.5"}):
            settings = Settings(QUEUE_BATCH_WINDOW=0.0)

        assert settings.queue.QUEUE_BATCH_WINDOW == 0.0

    def test_plan_limits_follow_overrides(self):
        """Test that plan bucket settings feed plan_limits()."""
        settings = Settings(RATE_LIMIT_PRO_CAPACITY=5, RATE_LIMIT_PRO_REFILL=1)

        assert settings.rate_limit.plan_limits()[TenantPlan.PRO] == (5.0, 1.0)

    def test_log_level_is_normalized(self):
        """Test that the log level is upper-cased."""
        assert Settings(LOG_LEVEL="debug").logging.LOG_LEVEL == "DEBUG"


@pytest.mark.unit
class TestSettingsValidation:
    """Test that misconfiguration fails fast."""

    def test_invalid_log_level_rejected(self):
        """Test that unknown log levels are rejected."""
        with pytest.raises(ValidationError):
            Settings(LOG_LEVEL="LOUD")

    def test_non_positive_ttl_rejected(self):
        """Test that a zero TTL is rejected."""
        with pytest.raises(ValidationError):
            Settings(CACHE_TTL_CONFIG=0)

    def test_zero_attempts_rejected(self):
        """Test that at least one write attempt is required."""
        with pytest.raises(ValidationError):
            Settings(QUEUE_MAX_ATTEMPTS=0)

    def test_unknown_store_backend_rejected(self):
        """Test that only known store backends are accepted."""
        with pytest.raises(ValidationError):
            Settings(STORE_BACKEND="postgres")


@pytest.mark.unit
class TestSettingsSingleton:
    """Test the settings accessors."""

    def test_get_settings_returns_same_instance(self):
        """Test that get_settings caches its instance."""
        assert get_settings() is get_settings()

    def test_reload_settings_replaces_instance(self):
        """Test that reload_settings builds a fresh instance."""
        before = get_settings()
        after = reload_settings()

        assert after is not before
        assert get_settings() is after
