"""
Unit Tests for the Batch Queue

Tests per-sheet ordering, ADD_ROWS coalescing, retry with backoff,
admission waits, cancellation, invalidation ordering and shutdown.
"""

import asyncio

import pytest

from tenant_sheets.core.config.constants import OperationKind, OperationState, ResourceKind, TenantPlan
from tenant_sheets.core.exceptions import (
    InvalidOperationError,
    QueueError,
    QueueFullError,
    QueueShutdownError,
    QuotaExceededError,
    RemoteAuthError,
    RetriesExhaustedError,
    TenantNotFoundError,
    TenantSheetsError,
    ThrottledError,
)
from tenant_sheets.core.resilience.batch_queue import BackoffPolicy, BatchQueueManager
from tenant_sheets.core.resilience.connection_pool_manager import DocumentConnectionPool
from tenant_sheets.infrastructure.cache.cache_manager import CacheKey, CacheManager
from tenant_sheets.infrastructure.cache.invalidation import CacheInvalidator
from tenant_sheets.infrastructure.monitoring.metrics_collector import MetricsCollector
from tenant_sheets.rate_limiting.rate_limiter import TokenBucketRateLimiter
from tests.test_fixtures import StoreTestFactory

ADD = OperationKind.ADD_ROWS
UPDATE = OperationKind.UPDATE_ROW
DELETE = OperationKind.DELETE_ROW


def add(*ids):
    return {"rows": [{"id": i} for i in ids]}


@pytest.fixture
def cache(clock):
    return CacheManager(sweep_interval=0, clock=clock)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def make_queue(registry, memory_store, cache, metrics, clock, sleep):
    """Build a queue over the in-memory store; keyword arguments override defaults."""

    def factory(plan_limits=None, **kwargs):
        pool = DocumentConnectionPool(registry, memory_store, maintenance_interval=0, clock=clock, sleep=sleep)
        limiter = TokenBucketRateLimiter(plan_limits=plan_limits, clock=clock)
        options = {
            "batch_max_rows": 50,
            "batch_window": 0.0,
            "max_attempts": 4,
            "backoff": BackoffPolicy(base=0.2, multiplier=2.0, max_delay=10.0, jitter=0.1, rng=lambda: 0.0),
            "remote_timeout": 10.0,
            "max_depth": 100,
            "worker_budget": 5,
            "throttle_max_wait": 120.0,
        }
        options.update(kwargs)
        return BatchQueueManager(
            pool,
            limiter,
            registry,
            CacheInvalidator(cache),
            metrics=metrics,
            clock=clock,
            sleep=sleep,
            **options,
        )

    return factory


@pytest.mark.unit
class TestOrdering:
    """Test per-sheet FIFO ordering."""

    @pytest.mark.asyncio
    async def test_operations_applied_in_enqueue_order(self, make_queue, memory_store):
        """Test that add, update and delete on one sheet apply in order."""
        queue = make_queue()

        ops = [
            queue.enqueue("t1", "USERS", ADD, add("1")),
            queue.enqueue("t1", "USERS", UPDATE, {"row_number": 2, "values": {"email": "a@example.com"}}),
            queue.enqueue("t1", "USERS", ADD, add("2")),
            queue.enqueue("t1", "USERS", DELETE, {"row_number": 2}),
        ]
        await asyncio.gather(*(op.future for op in ops))

        methods = [c.method for c in memory_store.calls if c.method in ("add_rows", "update_row", "delete_row")]
        assert methods == ["add_rows", "update_row", "add_rows", "delete_row"]
        assert memory_store.rows("doc-t1", "USERS") == [{"id": "2"}]

    @pytest.mark.asyncio
    async def test_results_per_operation(self, make_queue):
        """Test that each future resolves with its own result."""
        queue = make_queue()

        added = queue.enqueue("t1", "USERS", ADD, add("1"))
        updated = queue.enqueue("t1", "USERS", UPDATE, {"row_number": 2, "values": {"status": "active"}})
        deleted = queue.enqueue("t1", "USERS", DELETE, {"row_number": 2})

        assert [r.row_number for r in await added.future] == [2]
        assert (await updated.future).values["status"] == "active"
        assert await deleted.future is None

    @pytest.mark.asyncio
    async def test_sheets_drain_independently(self, make_queue, memory_store):
        """Test that a slow sheet does not hold back another sheet."""
        queue = make_queue()
        memory_store.delay_next("add_rows", 0.5)

        slow = queue.enqueue("t1", "USERS", ADD, add("1"))
        await asyncio.sleep(0.05)
        assert slow.state is OperationState.IN_FLIGHT

        fast = queue.enqueue("t1", "EVENTS", ADD, add("e1"))
        await fast.future

        assert not slow.future.done()
        await slow.future


@pytest.mark.unit
class TestCoalescing:
    """Test ADD_ROWS batching."""

    @pytest.mark.asyncio
    async def test_queued_adds_share_one_call(self, make_queue, memory_store):
        """Test that adds queued together become one remote call."""
        queue = make_queue()

        ops = [queue.enqueue("t1", "USERS", ADD, add(str(i), f"{i}b")) for i in range(3)]
        results = await asyncio.gather(*(op.future for op in ops))

        assert len(memory_store.calls_for("add_rows")) == 1
        assert [[r.row_number for r in rows] for rows in results] == [[2, 3], [4, 5], [6, 7]]
        assert queue.stats()["calls_saved"] == 2

    @pytest.mark.asyncio
    async def test_batch_respects_row_bound(self, make_queue, memory_store):
        """Test that a batch never exceeds the row bound."""
        queue = make_queue(batch_max_rows=2)

        ops = [queue.enqueue("t1", "USERS", ADD, add(str(i))) for i in range(5)]
        await asyncio.gather(*(op.future for op in ops))

        sizes = [len(c.payload) for c in memory_store.calls_for("add_rows")]
        assert sizes == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_other_kinds_break_the_run(self, make_queue, memory_store):
        """Test that an update between adds splits the batch."""
        queue = make_queue()

        ops = [
            queue.enqueue("t1", "USERS", ADD, add("1")),
            queue.enqueue("t1", "USERS", UPDATE, {"row_number": 2, "values": {"id": "1x"}}),
            queue.enqueue("t1", "USERS", ADD, add("2")),
        ]
        await asyncio.gather(*(op.future for op in ops))

        assert len(memory_store.calls_for("add_rows")) == 2

    @pytest.mark.asyncio
    async def test_window_collects_late_adds(self, make_queue, memory_store):
        """Test that adds arriving inside the window join the batch."""
        queue = make_queue(batch_window=0.5)

        first = queue.enqueue("t1", "USERS", ADD, add("1"))
        await asyncio.sleep(0.01)
        second = queue.enqueue("t1", "USERS", ADD, add("2"))
        closer = queue.enqueue("t1", "USERS", DELETE, {"row_number": 3})
        await asyncio.gather(first.future, second.future, closer.future)

        assert [len(c.payload) for c in memory_store.calls_for("add_rows")] == [2]
        assert memory_store.rows("doc-t1", "USERS") == [{"id": "1"}]

    @pytest.mark.asyncio
    async def test_rejected_batch_reapplied_one_by_one(self, make_queue, memory_store):
        """Test that one caller's bad rows fail only that caller and order is kept."""
        queue = make_queue()

        good = queue.enqueue("t1", "USERS", ADD, add("ok"))
        bad = queue.enqueue("t1", "USERS", ADD, {"rows": [{"nope": "x"}]})
        later = queue.enqueue("t1", "USERS", ADD, add("after"))

        assert [r.row_number for r in await good.future] == [2]
        with pytest.raises(InvalidOperationError):
            await bad.future
        assert [r.row_number for r in await later.future] == [3]

        assert memory_store.rows("doc-t1", "USERS") == [{"id": "ok"}, {"id": "after"}]
        assert [len(c.payload) for c in memory_store.calls_for("add_rows")] == [3, 1, 1, 1]
        assert [t.state for t in good.history] == [
            OperationState.PENDING,
            OperationState.IN_FLIGHT,
            OperationState.RETRYING,
            OperationState.IN_FLIGHT,
            OperationState.SUCCEEDED,
        ]
        assert queue.stats()["split_batches"] == 1

    @pytest.mark.asyncio
    async def test_single_bad_add_is_not_split(self, make_queue, memory_store):
        """Test that a lone invalid add fails without being re-run."""
        queue = make_queue()

        op = queue.enqueue("t1", "USERS", ADD, {"rows": [{"nope": "x"}]})
        with pytest.raises(InvalidOperationError):
            await op.future

        assert len(memory_store.calls_for("add_rows")) == 1
        assert queue.stats()["split_batches"] == 0


@pytest.mark.unit
class TestRetries:
    """Test retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_quota_errors_retried_until_success(self, make_queue, memory_store, sleep):
        """Test three quota failures then success: delays 0.2, 0.4, 0.8 and one row written."""
        queue = make_queue()
        memory_store.fail_next("add_rows", StoreTestFactory.quota(), times=3)

        op = queue.enqueue("t1", "USERS", ADD, add("1"))
        rows = await op.future

        assert sleep.delays == pytest.approx([0.2, 0.4, 0.8])
        assert len(rows) == 1
        assert memory_store.rows("doc-t1", "USERS") == [{"id": "1"}]
        assert op.attempts == 4
        assert [t.state for t in op.history] == [
            OperationState.PENDING,
            OperationState.IN_FLIGHT,
            OperationState.RETRYING,
            OperationState.IN_FLIGHT,
            OperationState.RETRYING,
            OperationState.IN_FLIGHT,
            OperationState.RETRYING,
            OperationState.IN_FLIGHT,
            OperationState.SUCCEEDED,
        ]
        retrying = [t for t in op.history if t.state is OperationState.RETRYING]
        assert [t.error for t in retrying] == ["quota_exceeded"] * 3
        assert queue.stats()["retries"] == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_queue, memory_store, sleep):
        """Test that four transient failures reject with RetriesExhaustedError."""
        queue = make_queue()
        memory_store.fail_next("add_rows", StoreTestFactory.quota(), times=4)

        op = queue.enqueue("t1", "USERS", ADD, add("1"))
        with pytest.raises(RetriesExhaustedError) as exc_info:
            await op.future

        error = exc_info.value
        assert isinstance(error.__cause__, QuotaExceededError)
        assert error.details["attempts"] == 4
        assert sleep.delays == pytest.approx([0.2, 0.4, 0.8])
        assert op.state is OperationState.FAILED
        assert memory_store.rows("doc-t1", "USERS") == []

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self, make_queue, memory_store, sleep):
        """Test that an invalid operation fails on the first attempt."""
        queue = make_queue()
        memory_store.fail_next("update_row", StoreTestFactory.invalid())

        op = queue.enqueue("t1", "USERS", UPDATE, {"row_number": 2, "values": {"id": "x"}})
        with pytest.raises(InvalidOperationError):
            await op.future

        assert sleep.delays == []
        assert op.attempts == 1
        assert op.history[-1].state is OperationState.FAILED

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, make_queue, memory_store, sleep):
        """Test that a write exceeding the remote timeout is retried."""
        queue = make_queue(remote_timeout=0.05)
        memory_store.delay_next("add_rows", 1.0)

        op = queue.enqueue("t1", "USERS", ADD, add("1"))
        await op.future

        assert sleep.delays == pytest.approx([0.2])
        assert [t.error for t in op.history if t.state is OperationState.RETRYING] == ["timeout"]
        assert memory_store.rows("doc-t1", "USERS") == [{"id": "1"}]

    @pytest.mark.asyncio
    async def test_auth_error_breaks_handle(self, make_queue, memory_store):
        """Test that an auth failure is terminal and evicts the tenant's handle."""
        queue = make_queue()
        memory_store.fail_next("add_rows", StoreTestFactory.auth())

        op = queue.enqueue("t1", "USERS", ADD, add("1"))
        with pytest.raises(RemoteAuthError):
            await op.future

        assert queue._pool.get_handle("t1") is None

    @pytest.mark.asyncio
    async def test_unknown_tenant_fails_batch(self, make_queue):
        """Test that a batch for an unregistered tenant is rejected."""
        op = make_queue().enqueue("ghost", "USERS", ADD, add("1"))

        with pytest.raises(TenantNotFoundError):
            await op.future

    @pytest.mark.asyncio
    async def test_terminal_failure_does_not_stall_the_queue(self, make_queue, memory_store):
        """Test that writes queued behind a rejected one still drain."""
        queue = make_queue()

        bad = queue.enqueue("t1", "USERS", UPDATE, {"row_number": 2, "values": {"nope": "x"}})
        added = queue.enqueue("t1", "USERS", ADD, add("1"))
        deleted = queue.enqueue("t1", "USERS", DELETE, {"row_number": 2})

        with pytest.raises(InvalidOperationError):
            await bad.future
        assert [r.row_number for r in await added.future] == [2]
        assert await deleted.future is None

        assert memory_store.rows("doc-t1", "USERS") == []
        assert queue.stats()["failed"] == 1
        await asyncio.wait_for(queue.shutdown(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_unexpected_error_rejects_batch_and_keeps_draining(self, make_queue):
        """Test that a crash while completing a batch rejects it and the next write proceeds."""
        queue = make_queue()
        invalidator = queue._invalidator
        original = invalidator.on_write_completed
        calls = []

        def flaky(tenant_id, sheet_title, kind, affected_keys=()):
            calls.append(kind)
            if len(calls) == 1:
                raise RuntimeError("invalidation backend gone")
            return original(tenant_id, sheet_title, kind, affected_keys)

        invalidator.on_write_completed = flaky
        first = queue.enqueue("t1", "USERS", ADD, add("1"))
        second = queue.enqueue("t1", "USERS", UPDATE, {"row_number": 2, "values": {"id": "2"}})

        with pytest.raises(TenantSheetsError) as exc_info:
            await first.future
        assert exc_info.value.details["original_error"] == "RuntimeError"
        assert first.state is OperationState.FAILED
        assert (await second.future).values["id"] == "2"
        assert calls == [ADD, UPDATE]

    def test_backoff_policy(self):
        """Test exponential growth, the cap and additive jitter."""
        policy = BackoffPolicy(base=0.2, multiplier=2.0, max_delay=1.0, jitter=0.1, rng=lambda: 0.5)

        assert [round(policy.delay(n), 3) for n in (1, 2, 3, 4, 5)] == [0.25, 0.45, 0.85, 1.05, 1.05]


@pytest.mark.unit
class TestAdmission:
    """Test rate limiter integration."""

    @pytest.mark.asyncio
    async def test_throttled_batch_waits_without_using_an_attempt(self, make_queue, sleep, metrics):
        """Test that a throttled batch sleeps retry_after and then runs."""
        queue = make_queue(plan_limits={TenantPlan.PRO: (1.0, 0.5)})

        first = queue.enqueue("t1", "USERS", ADD, add("1"))
        second = queue.enqueue("t1", "USERS", DELETE, {"row_number": 2})
        await asyncio.gather(first.future, second.future)

        assert sleep.delays == pytest.approx([2.0])
        assert second.attempts == 1
        assert queue.stats()["throttle_waits"] == 1
        assert 'tenant_sheets_throttled_total{source="queue"} 1.0' in metrics.render().decode()

    @pytest.mark.asyncio
    async def test_throttle_wait_is_bounded(self, make_queue):
        """Test that a batch gives up once the throttle wait bound is reached."""
        queue = make_queue(plan_limits={TenantPlan.PRO: (1.0, 0.5)}, throttle_max_wait=1.0)

        first = queue.enqueue("t1", "USERS", ADD, add("1"))
        second = queue.enqueue("t1", "USERS", DELETE, {"row_number": 2})
        await first.future
        with pytest.raises(ThrottledError):
            await second.future


@pytest.mark.unit
class TestEnqueueValidation:
    """Test enqueue-time rejections."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kind,payload",
        [
            (ADD, {"rows": []}),
            (ADD, {"rows": ["not-a-mapping"]}),
            (UPDATE, {"row_number": 1, "values": {"id": "x"}}),
            (UPDATE, {"row_number": 2}),
            (DELETE, {"row_number": "2"}),
            (DELETE, {"row_number": True}),
        ],
    )
    async def test_malformed_payload(self, make_queue, kind, payload):
        """Test that malformed payloads never enter the queue."""
        queue = make_queue()

        with pytest.raises(InvalidOperationError):
            queue.enqueue("t1", "USERS", kind, payload)
        assert queue.depth() == 0

    @pytest.mark.asyncio
    async def test_queue_full(self, make_queue):
        """Test the per-sheet depth bound."""
        queue = make_queue(max_depth=2)
        ops = [queue.enqueue("t1", "USERS", ADD, add(str(i))) for i in range(2)]

        with pytest.raises(QueueFullError):
            queue.enqueue("t1", "USERS", ADD, add("3"))
        # Another sheet has its own bound
        ops.append(queue.enqueue("t1", "EVENTS", ADD, add("e")))

        await asyncio.gather(*(op.future for op in ops))

    @pytest.mark.asyncio
    async def test_illegal_transition(self, make_queue):
        """Test that the state machine rejects impossible transitions."""
        op = make_queue().enqueue("t1", "USERS", ADD, add("1"))
        await op.future

        with pytest.raises(QueueError):
            op.transition(OperationState.IN_FLIGHT, at=0.0)


@pytest.mark.unit
class TestCancellation:
    """Test callers abandoning their futures."""

    @pytest.mark.asyncio
    async def test_cancel_pending_operation(self, make_queue, memory_store):
        """Test that a pending operation cancelled by its caller is never applied."""
        queue = make_queue()

        first = queue.enqueue("t1", "USERS", ADD, add("1"))
        second = queue.enqueue("t1", "USERS", DELETE, {"row_number": 2})
        second.future.cancel()
        await first.future
        await queue.shutdown()

        assert second.state is OperationState.CANCELLED
        assert memory_store.calls_for("delete_row") == []
        assert queue.stats()["cancelled"] == 1

    @pytest.mark.asyncio
    async def test_cancel_in_flight_operation(self, make_queue, memory_store):
        """Test that an in-flight write completes and its result is discarded."""
        queue = make_queue()
        memory_store.delay_next("add_rows", 0.1)

        op = queue.enqueue("t1", "USERS", ADD, add("1"))
        await asyncio.sleep(0.02)
        assert op.state is OperationState.IN_FLIGHT
        op.future.cancel()
        await queue.shutdown()

        assert op.state is OperationState.SUCCEEDED
        assert memory_store.rows("doc-t1", "USERS") == [{"id": "1"}]
        assert queue.stats()["discarded"] == 1


@pytest.mark.unit
class TestInvalidationOrdering:
    """Test that the cache is invalidated before callers are told."""

    @pytest.mark.asyncio
    async def test_cache_invalidated_before_future_resolves(self, make_queue, cache):
        """Test that the read cache is already clean when the future completes."""
        queue = make_queue()
        key = CacheKey.build("t1", ResourceKind.ROWS, "USERS")
        cache.set(key, [])
        seen = []

        invalidator = queue._invalidator
        original = invalidator.on_write_completed

        def spy(tenant_id, sheet_title, kind, affected_keys=()):
            seen.append(op.future.done())
            return original(tenant_id, sheet_title, kind, affected_keys)

        invalidator.on_write_completed = spy
        op = queue.enqueue("t1", "USERS", ADD, add("1"))
        await op.future

        assert seen == [False]
        assert cache.contains(key) is False


@pytest.mark.unit
class TestLifecycle:
    """Test flush, shutdown and introspection."""

    @pytest.mark.asyncio
    async def test_get_operation_while_pending(self, make_queue):
        """Test that operations are visible until they are terminal."""
        queue = make_queue()
        op = queue.enqueue("t1", "USERS", ADD, add("1"))

        assert queue.get_operation(op.op_id) is op
        assert queue.depth("t1") == 1
        await queue.flush_tenant("t1")

        assert queue.get_operation(op.op_id) is None
        assert queue.depth() == 0

    @pytest.mark.asyncio
    async def test_shutdown_drains(self, make_queue, memory_store):
        """Test that a draining shutdown applies every queued write."""
        queue = make_queue()
        ops = [queue.enqueue("t1", "USERS", ADD, add(str(i))) for i in range(3)]

        await queue.shutdown(drain=True)

        assert all(op.state is OperationState.SUCCEEDED for op in ops)
        assert len(memory_store.rows("doc-t1", "USERS")) == 3
        with pytest.raises(QueueShutdownError):
            queue.enqueue("t1", "USERS", ADD, add("late"))
        assert queue.closed

    @pytest.mark.asyncio
    async def test_shutdown_without_drain_rejects(self, make_queue, memory_store):
        """Test that an abandoning shutdown rejects in-flight and pending writes."""
        queue = make_queue()
        memory_store.delay_next("add_rows", 1.0)
        in_flight = queue.enqueue("t1", "USERS", ADD, add("1"))
        pending = queue.enqueue("t1", "USERS", DELETE, {"row_number": 2})
        await asyncio.sleep(0.02)

        await queue.shutdown(drain=False)

        for op in (in_flight, pending):
            assert isinstance(op.future.exception(), QueueShutdownError)
            assert op.state is OperationState.FAILED
        assert memory_store.calls_for("delete_row") == []

    @pytest.mark.asyncio
    async def test_stats(self, make_queue, metrics):
        """Test queue statistics."""
        queue = make_queue()
        ops = [queue.enqueue("t1", "USERS", ADD, add(str(i))) for i in range(4)]
        await asyncio.gather(*(op.future for op in ops))

        stats = queue.stats()

        assert (stats["enqueued"], stats["succeeded"], stats["batches"]) == (4, 4, 1)
        assert stats["avg_batch_size"] == 4.0
        assert metrics.operations_total == 4
