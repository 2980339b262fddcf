"""
Unit Tests for the Sheets Service facade

Tests read-your-writes, tenant isolation, the tenant gate, ensure_sheet,
row references, metrics and health checks against the in-memory store.
"""

import asyncio

import pytest

from tenant_sheets.application.services.sheets_service import HealthReport, ServiceMetrics, row_number_of
from tenant_sheets.core.config.constants import OperationState, ResourceKind
from tenant_sheets.core.exceptions import (
    InvalidOperationError,
    SheetNotFoundError,
    TenantDisabledError,
    TenantNotFoundError,
    TenantSheetsError,
    ThrottledError,
)
from tenant_sheets.infrastructure.cache.cache_manager import CacheKey
from tenant_sheets.infrastructure.store.base import RowFilter, SheetRow
from tests.test_fixtures import StoreTestFactory


def exhaust(service, tenant_id):
    """Drain a tenant's token bucket without advancing the clock."""
    tenant = service.registry.resolve(tenant_id)
    while service.rate_limiter.admit(tenant).allowed:
        pass


@pytest.mark.unit
class TestReadYourWrites:
    """Test that reads after a returned write see the write."""

    @pytest.mark.asyncio
    async def test_config_sheet_read_after_add(self, service, memory_store):
        """Test a cached config read, an add, then a fresh read including the new row."""
        first = await service.get_rows("t1", "CONFIG", resource_kind=ResourceKind.CONFIG)
        again = await service.get_rows("t1", "CONFIG", resource_kind=ResourceKind.CONFIG)
        assert first == again == []
        assert len(memory_store.calls_for("get_rows")) == 1

        await service.add_rows("t1", "CONFIG", [{"key": "theme", "value": "dark"}])
        rows = await service.get_rows("t1", "CONFIG", resource_kind=ResourceKind.CONFIG)

        assert [r.values for r in rows] == [{"key": "theme", "value": "dark"}]
        assert len(memory_store.calls_for("get_rows")) == 2

    @pytest.mark.asyncio
    async def test_update_and_delete_by_row(self, service):
        """Test that SheetRow references address the rows a read returned."""
        await service.add_rows("t1", "USERS", [
            {"id": "1", "email": "a@example.com"},
            {"id": "2", "email": "b@example.com"},
        ])
        rows = await service.get_rows("t1", "USERS")

        await service.update_row("t1", "USERS", rows[0], {"status": "active"})
        await service.delete_row("t1", "USERS", rows[1])
        remaining = await service.get_rows("t1", "USERS")

        assert [r.values for r in remaining] == [
            {"id": "1", "email": "a@example.com", "status": "active"},
        ]

    @pytest.mark.asyncio
    async def test_filtered_views_are_invalidated(self, service):
        """Test that every cached view of a sheet goes stale on write."""
        await service.add_rows("t1", "USERS", [{"id": "1", "status": "active"}])

        active = RowFilter(equals={"status": "active"})
        assert len(await service.get_rows("t1", "USERS", row_filter=active)) == 1

        await service.add_rows("t1", "USERS", [{"id": "2", "status": "active"}])

        assert len(await service.get_rows("t1", "USERS", row_filter=active)) == 2

    @pytest.mark.asyncio
    async def test_transient_write_failures_retried(self, service, memory_store, sleep):
        """Test three quota failures then success through the facade."""
        memory_store.fail_next("add_rows", StoreTestFactory.quota(), times=3)

        await service.add_rows("t1", "EVENTS", [{"id": "e1", "type": "login"}])

        assert sleep.delays == pytest.approx([0.2, 0.4, 0.8])
        assert memory_store.rows("doc-t1", "EVENTS") == [{"id": "e1", "type": "login"}]


@pytest.mark.unit
class TestReadPath:
    """Test cached row snapshots, the read/write race and error wrapping."""

    @pytest.mark.asyncio
    async def test_returned_rows_do_not_alias_the_cache(self, service, memory_store):
        """Test that mutating returned rows leaves the cached rows intact."""
        await service.add_rows("t1", "USERS", [{"id": "1", "email": "a@example.com"}])

        rows = await service.get_rows("t1", "USERS")
        rows[0].values["email"] = "mallory@example.com"
        rows.clear()

        again = await service.get_rows("t1", "USERS")
        again.append(SheetRow(row_number=99, values={}))
        cached = await service.get_rows("t1", "USERS")

        assert len(memory_store.calls_for("get_rows")) == 1
        assert len(cached) == 1
        assert cached[0].values["email"] == "a@example.com"

    @pytest.mark.asyncio
    async def test_read_overlapping_a_write_is_not_cached(self, service, memory_store):
        """Test that a read in flight while a write lands does not populate the cache."""
        key = CacheKey.build("t1", ResourceKind.ROWS, "USERS")
        memory_store.delay_next("get_rows", 0.1)

        read = asyncio.create_task(service.get_rows("t1", "USERS"))
        await asyncio.sleep(0.02)
        await service.add_rows("t1", "USERS", [{"id": "1"}])
        await read

        assert not service.cache.contains(key)
        rows = await service.get_rows("t1", "USERS")
        assert [r.values["id"] for r in rows] == ["1"]
        assert len(memory_store.calls_for("get_rows")) == 2
        assert service.cache.contains(key)

    @pytest.mark.asyncio
    async def test_unexpected_store_error_is_wrapped(self, service, memory_store):
        """Test that a non-library error from the store surfaces as TenantSheetsError."""
        memory_store.fail_next("get_rows", RuntimeError("token refresh failed"))

        with pytest.raises(TenantSheetsError) as exc_info:
            await service.get_rows("t1", "USERS")

        error = exc_info.value
        assert isinstance(error.__cause__, RuntimeError)
        assert error.tenant_id == "t1"
        assert error.details["original_error"] == "RuntimeError"
        assert error.details["sheet"] == "USERS"
        assert await service.get_rows("t1", "USERS") == []

    @pytest.mark.asyncio
    async def test_unexpected_error_in_ensure_sheet_is_wrapped(self, service, memory_store):
        """Test that ensure_sheet wraps non-library errors too."""
        memory_store.fail_next("sheet", RuntimeError("socket closed"))

        with pytest.raises(TenantSheetsError) as exc_info:
            await service.ensure_sheet("t1", "USERS", ["id"])

        assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.unit
class TestTenantIsolation:
    """Test that tenants never see each other's data or cache entries."""

    @pytest.mark.asyncio
    async def test_write_to_one_tenant_leaves_other_cached(self, service, memory_store):
        """Test that t1's write neither shows up in nor invalidates t2's cache."""
        assert await service.get_rows("t2", "USERS") == []
        t2_key = CacheKey.build("t2", ResourceKind.ROWS, "USERS")

        await service.add_rows("t1", "USERS", [{"id": "1"}])

        assert service.cache.contains(t2_key)
        assert await service.get_rows("t2", "USERS") == []
        assert memory_store.rows("doc-t2", "USERS") == []
        assert len(await service.get_rows("t1", "USERS")) == 1

    @pytest.mark.asyncio
    async def test_rate_limits_are_per_tenant(self, service):
        """Test that an exhausted tenant does not throttle another."""
        exhaust(service, "t2")

        with pytest.raises(ThrottledError) as exc_info:
            await service.get_rows("t2", "USERS")
        assert exc_info.value.retry_after > 0

        assert await service.get_rows("t1", "USERS") == []

    @pytest.mark.asyncio
    async def test_cached_reads_bypass_rate_limit(self, service):
        """Test that a cache hit is served while the tenant is throttled."""
        await service.get_rows("t2", "USERS")
        exhaust(service, "t2")

        assert await service.get_rows("t2", "USERS") == []


@pytest.mark.unit
class TestTenantGate:
    """Test the gate that runs before any other component."""

    @pytest.mark.asyncio
    async def test_disabled_tenant(self, service, memory_store):
        """Test that a disabled tenant is rejected on every operation."""
        with pytest.raises(TenantDisabledError):
            await service.get_rows("t3", "USERS")
        with pytest.raises(TenantDisabledError):
            await service.add_rows("t3", "USERS", [{"id": "1"}])
        with pytest.raises(TenantDisabledError):
            await service.health_check("t3")

        assert [c for c in memory_store.calls if c.document_id == "doc-t3"] == []
        assert service.queue.depth() == 0

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, service):
        """Test that an unregistered tenant is rejected."""
        with pytest.raises(TenantNotFoundError):
            await service.get_rows("nobody", "USERS")
        with pytest.raises(TenantNotFoundError):
            await service.delete_row("nobody", "USERS", 2)

    @pytest.mark.asyncio
    async def test_missing_sheet(self, service):
        """Test that reading an absent sheet raises SheetNotFoundError."""
        with pytest.raises(SheetNotFoundError):
            await service.get_rows("t1", "NOPE")


@pytest.mark.unit
class TestEnsureSheet:
    """Test sheet creation and its cache."""

    @pytest.mark.asyncio
    async def test_creates_missing_sheet(self, service, memory_store):
        """Test that a missing sheet is created with its header and then cached."""
        ref = await service.ensure_sheet("t1", "AUDIT", ["at", "actor"])

        assert ref.created is True
        assert ref.header_columns == ("at", "actor")
        assert memory_store.rows("doc-t1", "AUDIT") == []

        sheet_calls = len(memory_store.calls_for("sheet"))
        assert await service.ensure_sheet("t1", "AUDIT", ["at", "actor"]) == ref
        assert len(memory_store.calls_for("sheet")) == sheet_calls

    @pytest.mark.asyncio
    async def test_existing_sheet(self, service):
        """Test that an existing sheet keeps its own header."""
        ref = await service.ensure_sheet("t1", "USERS", ["ignored"])

        assert ref.created is False
        assert ref.header_columns == ("id", "email", "status")

    @pytest.mark.asyncio
    async def test_empty_header(self, service):
        """Test that a sheet needs at least one column."""
        with pytest.raises(InvalidOperationError):
            await service.ensure_sheet("t1", "AUDIT", [])


@pytest.mark.unit
class TestRowReferences:
    """Test row reference handling."""

    def test_row_number_of(self):
        """Test that numbers and SheetRows are accepted."""
        assert row_number_of(7) == 7
        assert row_number_of(SheetRow(row_number=3, values={})) == 3

    @pytest.mark.parametrize("ref", ["2", True, None, 2.0])
    def test_invalid_row_reference(self, ref):
        """Test that anything else is rejected."""
        with pytest.raises(InvalidOperationError):
            row_number_of(ref)

    @pytest.mark.asyncio
    async def test_header_row_not_writable(self, service):
        """Test that row 1 (the header) cannot be updated."""
        with pytest.raises(InvalidOperationError):
            await service.update_row("t1", "USERS", 1, {"id": "x"})

    @pytest.mark.asyncio
    async def test_empty_patch(self, service):
        """Test that an update needs at least one column."""
        with pytest.raises(InvalidOperationError):
            await service.update_row("t1", "USERS", 2, {})


@pytest.mark.unit
class TestOperations:
    """Test fire-and-forget writes."""

    @pytest.mark.asyncio
    async def test_write_without_waiting(self, service, memory_store):
        """Test that wait=False returns an op id that can be looked up until done."""
        op_id = await service.add_rows("t1", "USERS", [{"id": "1"}], wait=False)

        op = service.get_operation(op_id)
        assert op is not None
        assert op.state is OperationState.PENDING

        await service.queue.flush_tenant("t1")

        assert service.get_operation(op_id) is None
        assert op.state is OperationState.SUCCEEDED
        assert memory_store.rows("doc-t1", "USERS") == [{"id": "1"}]


@pytest.mark.unit
class TestObservability:
    """Test metrics, stats and health checks."""

    @pytest.mark.asyncio
    async def test_get_metrics(self, service):
        """Test metrics after one miss and one hit."""
        await service.get_rows("t1", "USERS")
        await service.get_rows("t1", "USERS")

        metrics = service.get_metrics()

        assert isinstance(metrics, ServiceMetrics)
        assert metrics.operations_total == 2
        assert (metrics.cache_hits, metrics.cache_misses) == (1, 1)
        assert metrics.cache_hit_ratio == 0.5
        assert metrics.pool_size == 1
        assert metrics.queue_depth == 0

    @pytest.mark.asyncio
    async def test_health_check_ok(self, service):
        """Test a healthy tenant."""
        report = await service.health_check("t1")

        assert isinstance(report, HealthReport)
        assert report.healthy
        assert report.details["sheet_count"] == 3
        assert report.latency_ms is not None

    @pytest.mark.asyncio
    async def test_health_check_throttled(self, service, memory_store):
        """Test that the probe respects the rate limit."""
        exhaust(service, "t2")

        report = await service.health_check("t2")

        assert not report.sheets_ok
        assert report.cache_ok
        assert report.details["sheets_error"] == "throttled"
        assert memory_store.calls_for("sheet_titles") == []

    @pytest.mark.asyncio
    async def test_health_check_store_failure(self, service, memory_store):
        """Test that a failing probe is reported, not raised."""
        memory_store.fail_next("sheet_titles", StoreTestFactory.unavailable())

        report = await service.health_check("t1")

        assert not report.healthy
        assert report.details["sheets_error"] == "unavailable"

    @pytest.mark.asyncio
    async def test_health_check_unexpected_failure(self, service, memory_store):
        """Test that an unexpected store error is reported as an internal error."""
        memory_store.fail_next("sheet_titles", RuntimeError("connection reset"))

        report = await service.health_check("t1")

        assert not report.healthy
        assert report.details["sheets_error"] == "internal_error"
        assert report.details["sheets_error_type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_stats_sections(self, service):
        """Test that component stats are grouped by component."""
        stats = service.stats()

        assert set(stats) == {"registry", "rate_limiter", "pool", "cache", "invalidation", "queue", "metrics"}
        assert stats["registry"]["enabled"] == 2
