"""
Unit Tests for System Constants

Tests enum values, the operation state machine sets and default policies.
"""

import pytest

from tenant_sheets.core.config.constants import (
    DEFAULT_RESOURCE_TTLS,
    PLAN_RATE_LIMITS,
    QUEUE_BACKOFF_BASE,
    QUEUE_BACKOFF_MULTIPLIER,
    QUEUE_MAX_ATTEMPTS,
    TENANT_ID_PATTERN,
    TERMINAL_OPERATION_STATES,
    OperationState,
    ResourceKind,
    Stage,
    TenantPlan,
)


@pytest.mark.unit
class TestEnums:
    """Test enumeration values."""

    def test_stage_codes_are_prefixed(self):
        """Test that every stage carries its component prefix."""
        for stage in Stage:
            prefix = stage.value.split("_", 1)[0]
            assert prefix in {"TR", "RL", "CP", "BQ", "C", "CI", "SV"}

    def test_resource_kinds_are_strings(self):
        """Test that resource kinds serialize as plain strings."""
        assert ResourceKind.ROWS == "rows"
        assert ResourceKind("sheet_info") is ResourceKind.SHEET_INFO

    def test_terminal_states(self):
        """Test that only succeeded, failed and cancelled are terminal."""
        assert TERMINAL_OPERATION_STATES == {
            OperationState.SUCCEEDED,
            OperationState.FAILED,
            OperationState.CANCELLED,
        }


@pytest.mark.unit
class TestPolicies:
    """Test default policies."""

    def test_every_plan_has_limits(self):
        """Test that each plan has a rate limit entry."""
        assert set(PLAN_RATE_LIMITS) == set(TenantPlan)

    def test_higher_plans_get_larger_buckets(self):
        """Test that plan capacity grows with the plan."""
        starter = PLAN_RATE_LIMITS[TenantPlan.STARTER][0]
        growth = PLAN_RATE_LIMITS[TenantPlan.GROWTH][0]
        pro = PLAN_RATE_LIMITS[TenantPlan.PRO][0]
        assert starter < growth < pro

    def test_every_kind_has_ttl(self):
        """Test that each resource kind has a default TTL."""
        assert set(DEFAULT_RESOURCE_TTLS) == set(ResourceKind)

    def test_retry_defaults(self):
        """Test the write retry defaults."""
        assert (QUEUE_MAX_ATTEMPTS, QUEUE_BACKOFF_BASE, QUEUE_BACKOFF_MULTIPLIER) == (4, 0.2, 2.0)

    @pytest.mark.parametrize("tenant_id", ["t1", "acme-corp", "Tenant_42"])
    def test_valid_tenant_ids(self, tenant_id):
        """Test that ordinary tenant ids match the pattern."""
        assert TENANT_ID_PATTERN.match(tenant_id)

    @pytest.mark.parametrize("tenant_id", ["", "a:b", "-lead", "x" * 65, "sp ace"])
    def test_invalid_tenant_ids(self, tenant_id):
        """Test that ids unusable as cache namespaces are rejected."""
        assert not TENANT_ID_PATTERN.match(tenant_id)
