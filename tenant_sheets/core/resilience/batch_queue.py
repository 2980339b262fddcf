"""
Batch Queue - serialized, coalescing write pipeline

Every mutation of a tenant sheet goes through this queue. One FIFO queue
exists per (tenant, sheet) pair and it is drained by at most one task at a
time, so writes to one sheet are applied strictly in enqueue order while
different sheets (and tenants) drain concurrently.

Architecture:
    BatchQueueManager (Public API)
        ├── SheetQueue (pending operations + drain task of one sheet)
        ├── QueueOperation (state machine + caller future)
        └── BackoffPolicy (retry delays)

Flow per batch:
    1. Pop a batch from the head (one op, or a run of ADD_ROWS coalesced
       into a single remote call)
    2. Ask the rate limiter for admission (throttle waits cost no attempt)
    3. Call the remote store through a pooled handle, under a timeout
    4. Success: invalidate the cache, THEN resolve every future
    5. Transient failure: back off and retry the same batch
    6. Terminal failure / attempts exhausted: reject every future

STAGE-BQ: Batch Queue
---------------------
BQ.1: Operation enqueued
BQ.2: Batch started
BQ.3: Throttled, waiting for admission
BQ.4: Transient failure, retrying
BQ.5: Batch succeeded
BQ.6: Batch failed
BQ.7: Operation cancelled / result discarded
BQ.8: Shutdown

Author: System Architect
Date: 2026-10-19
"""

import asyncio
import random
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tenant_sheets.core.config.constants import (
    QUEUE_BACKOFF_BASE,
    QUEUE_BACKOFF_JITTER,
    QUEUE_BACKOFF_MAX,
    QUEUE_BACKOFF_MULTIPLIER,
    QUEUE_BATCH_MAX_ROWS,
    QUEUE_BATCH_WINDOW_SECONDS,
    QUEUE_MAX_ATTEMPTS,
    QUEUE_MAX_DEPTH,
    QUEUE_REMOTE_TIMEOUT,
    QUEUE_THROTTLE_MAX_WAIT,
    QUEUE_WORKER_BUDGET,
    TERMINAL_OPERATION_STATES,
    OperationKind,
    OperationState,
)
from tenant_sheets.core.exceptions import (
    InvalidOperationError,
    QueueError,
    QueueFullError,
    QueueShutdownError,
    RemoteTimeoutError,
    RetriesExhaustedError,
    ThrottledError,
    TenantSheetsError,
)
from tenant_sheets.core.logging import bind_log_context, get_logger, log_stage
from tenant_sheets.core.resilience.connection_pool_manager import ConnectionHandle, DocumentConnectionPool
from tenant_sheets.infrastructure.cache.invalidation import CacheInvalidator
from tenant_sheets.infrastructure.monitoring.metrics_collector import MetricsCollector
from tenant_sheets.infrastructure.store.base import FIRST_DATA_ROW, SheetHandle
from tenant_sheets.rate_limiting.rate_limiter import TokenBucketRateLimiter
from tenant_sheets.tenancy.registry import TenantRegistry

logger = get_logger(__name__)


# =============================================================================
# OPERATION STATE MACHINE
# =============================================================================

_TRANSITIONS: dict[OperationState, frozenset[OperationState]] = {
    OperationState.PENDING: frozenset({OperationState.IN_FLIGHT, OperationState.CANCELLED, OperationState.FAILED}),
    OperationState.IN_FLIGHT: frozenset({OperationState.SUCCEEDED, OperationState.RETRYING, OperationState.FAILED}),
    OperationState.RETRYING: frozenset({OperationState.IN_FLIGHT, OperationState.FAILED}),
    OperationState.SUCCEEDED: frozenset(),
    OperationState.FAILED: frozenset(),
    OperationState.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class OperationTransition:
    """One entry of an operation's history."""

    state: OperationState
    at: float
    attempt: int
    delay: float | None = None
    error: str | None = None


@dataclass
class QueueOperation:
    """
    A queued mutation and the future its caller awaits.

    Payload shapes:
        ADD_ROWS:   {"rows": [{column: value, ...}, ...]}
        UPDATE_ROW: {"row_number": int, "values": {column: value, ...}}
        DELETE_ROW: {"row_number": int}
    """

    tenant_id: str
    sheet_title: str
    kind: OperationKind
    payload: dict[str, Any]
    future: asyncio.Future
    enqueued_at: float
    client_ip: str | None = None
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: OperationState = OperationState.PENDING
    attempts: int = 0
    history: list[OperationTransition] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        if self.kind is OperationKind.ADD_ROWS:
            return len(self.payload["rows"])
        return 1

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_OPERATION_STATES

    def transition(
        self,
        state: OperationState,
        at: float,
        delay: float | None = None,
        error: str | None = None,
    ) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise QueueError(
                f"Illegal operation transition {self.state.value} -> {state.value}",
                tenant_id=self.tenant_id,
                details={"op_id": self.op_id},
            )
        self.state = state
        self.history.append(
            OperationTransition(state=state, at=at, attempt=self.attempts, delay=delay, error=error)
        )


class BackoffPolicy:
    """
    Exponential backoff with additive jitter.

    delay(n) = min(max_delay, base * multiplier ** (n - 1)) + uniform(0, jitter)

    where n is the number of the attempt that just failed (1-based).
    """

    def __init__(
        self,
        base: float = QUEUE_BACKOFF_BASE,
        multiplier: float = QUEUE_BACKOFF_MULTIPLIER,
        max_delay: float = QUEUE_BACKOFF_MAX,
        jitter: float = QUEUE_BACKOFF_JITTER,
        rng: Callable[[], float] = random.random,
    ):
        self.base = base
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng

    def delay(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base * self.multiplier ** (attempt - 1))
        if self.jitter > 0:
            delay += self._rng() * self.jitter
        return delay


class SheetQueue:
    """Pending operations and drain task of one (tenant, sheet) pair."""

    def __init__(self, tenant_id: str, sheet_title: str):
        self.tenant_id = tenant_id
        self.sheet_title = sheet_title
        self.pending: deque[QueueOperation] = deque()
        self.drain_task: asyncio.Task | None = None
        self.wakeup = asyncio.Event()
        self.sheet: SheetHandle | None = None
        self.sheet_handle_id: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.tenant_id, self.sheet_title)

    def head_run_closed(self) -> bool:
        """True once a non-ADD_ROWS operation sits behind the head run."""
        return any(op.kind is not OperationKind.ADD_ROWS for op in self.pending)

    def head_rows(self) -> int:
        """Rows in the contiguous run of ADD_ROWS at the head of the queue."""
        rows = 0
        for op in self.pending:
            if op.kind is not OperationKind.ADD_ROWS:
                break
            rows += op.row_count
        return rows

    def __len__(self) -> int:
        return len(self.pending)


def validate_payload(kind: OperationKind, payload: dict[str, Any]) -> None:
    """Reject malformed mutations before they reach the queue."""
    if kind is OperationKind.ADD_ROWS:
        rows = payload.get("rows")
        if not isinstance(rows, list) or not rows or not all(isinstance(r, dict) for r in rows):
            raise InvalidOperationError("add_rows needs a non-empty list of row mappings")
        return

    row_number = payload.get("row_number")
    if not isinstance(row_number, int) or isinstance(row_number, bool) or row_number < FIRST_DATA_ROW:
        raise InvalidOperationError(
            f"Row number must be an integer >= {FIRST_DATA_ROW}",
            details={"row_number": row_number},
        )
    if kind is OperationKind.UPDATE_ROW and not isinstance(payload.get("values"), dict):
        raise InvalidOperationError("update_row needs a mapping of column values")


# =============================================================================
# BATCH QUEUE MANAGER
# =============================================================================


class BatchQueueManager:
    """
    Per-(tenant, sheet) write queues with coalescing, admission and retry.

    STAGE-BQ.0: Batch queue initialization

    Usage:
        queue = BatchQueueManager(pool, limiter, registry, invalidator)
        op = queue.enqueue("acme", "USERS", OperationKind.ADD_ROWS, {"rows": [...]})
        rows = await op.future
    """

    def __init__(
        self,
        pool: DocumentConnectionPool,
        rate_limiter: TokenBucketRateLimiter,
        registry: TenantRegistry,
        invalidator: CacheInvalidator,
        metrics: MetricsCollector | None = None,
        batch_max_rows: int = QUEUE_BATCH_MAX_ROWS,
        batch_window: float = QUEUE_BATCH_WINDOW_SECONDS,
        max_attempts: int = QUEUE_MAX_ATTEMPTS,
        backoff: BackoffPolicy | None = None,
        remote_timeout: float = QUEUE_REMOTE_TIMEOUT,
        max_depth: int = QUEUE_MAX_DEPTH,
        worker_budget: int = QUEUE_WORKER_BUDGET,
        throttle_max_wait: float = QUEUE_THROTTLE_MAX_WAIT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._pool = pool
        self._rate_limiter = rate_limiter
        self._registry = registry
        self._invalidator = invalidator
        self._metrics = metrics or MetricsCollector()
        self._batch_max_rows = batch_max_rows
        self._batch_window = batch_window
        self._max_attempts = max_attempts
        self._backoff = backoff or BackoffPolicy()
        self._remote_timeout = remote_timeout
        self._max_depth = max_depth
        self._worker_budget = worker_budget
        self._throttle_max_wait = throttle_max_wait
        self._clock = clock
        self._sleep = sleep

        self._queues: dict[tuple[str, str], SheetQueue] = {}
        self._operations: dict[str, QueueOperation] = {}
        self._workers = asyncio.Semaphore(worker_budget)
        self._closed = False

        self._enqueued = 0
        self._succeeded = 0
        self._failed = 0
        self._cancelled = 0
        self._discarded = 0
        self._batches = 0
        self._remote_calls = 0
        self._calls_saved = 0
        self._batched_ops = 0
        self._retries = 0
        self._throttle_waits = 0
        self._splits = 0

        logger.info(
            "Batch queue initialized",
            stage="BQ.0",
            batch_max_rows=batch_max_rows,
            batch_window=batch_window,
            max_attempts=max_attempts,
            worker_budget=worker_budget,
        )

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue(
        self,
        tenant_id: str,
        sheet_title: str,
        kind: OperationKind,
        payload: dict[str, Any],
        client_ip: str | None = None,
    ) -> QueueOperation:
        """
        Accept a mutation and schedule its queue for draining.

        STAGE-BQ.1: Operation enqueued

        Must be called from a running event loop. The returned operation's
        ``future`` resolves with the result (added rows, updated row, or None
        for deletes) or rejects with the terminal error.

        Raises:
            QueueShutdownError: The queue no longer accepts writes
            QueueFullError: The (tenant, sheet) queue is at its depth bound
            InvalidOperationError: Malformed payload
        """
        if self._closed:
            raise QueueShutdownError("Batch queue is shut down", tenant_id=tenant_id)
        validate_payload(kind, payload)

        queue = self._queues.get((tenant_id, sheet_title))
        if queue is None:
            queue = self._queues[(tenant_id, sheet_title)] = SheetQueue(tenant_id, sheet_title)
        if len(queue.pending) >= self._max_depth:
            raise QueueFullError(
                f"Write queue for sheet '{sheet_title}' is full",
                tenant_id=tenant_id,
                details={"sheet": sheet_title, "max_depth": self._max_depth},
            )

        op = QueueOperation(
            tenant_id=tenant_id,
            sheet_title=sheet_title,
            kind=kind,
            payload=payload,
            future=asyncio.get_running_loop().create_future(),
            enqueued_at=self._clock(),
            client_ip=client_ip,
        )
        op.history.append(OperationTransition(state=op.state, at=op.enqueued_at, attempt=0))
        op.future.add_done_callback(lambda _f, op=op: self._on_future_done(op))

        queue.pending.append(op)
        self._operations[op.op_id] = op
        self._enqueued += 1
        self._metrics.set_queue_depth(self.depth())

        # The coalescing window can close early once the head run cannot grow
        if kind is not OperationKind.ADD_ROWS or queue.head_rows() >= self._batch_max_rows:
            queue.wakeup.set()

        log_stage(
            logger,
            "BQ.1",
            "Operation enqueued",
            level="debug",
            tenant_id=tenant_id,
            sheet=sheet_title,
            op_id=op.op_id,
            kind=kind.value,
            depth=len(queue.pending),
        )
        self._ensure_drain(queue)
        return op

    def _on_future_done(self, op: QueueOperation) -> None:
        if not op.future.cancelled():
            # Mark the exception retrieved; callers that never await still see state
            op.future.exception()
            return

        if op.state is OperationState.PENDING:
            queue = self._queues.get((op.tenant_id, op.sheet_title))
            if queue is not None and op in queue.pending:
                queue.pending.remove(op)
                queue.wakeup.set()
            op.transition(OperationState.CANCELLED, at=self._clock())
            self._operations.pop(op.op_id, None)
            self._cancelled += 1
            self._metrics.set_queue_depth(self.depth())
            log_stage(logger, "BQ.7", "Operation cancelled before drain", op_id=op.op_id, tenant_id=op.tenant_id)

    def _ensure_drain(self, queue: SheetQueue) -> None:
        if queue.drain_task is None or queue.drain_task.done():
            queue.drain_task = asyncio.create_task(
                self._drain(queue), name=f"batch-queue:{queue.tenant_id}:{queue.sheet_title}"
            )

    # =========================================================================
    # Drain
    # =========================================================================

    async def _drain(self, queue: SheetQueue) -> None:
        while queue.pending:
            await self._wait_for_window(queue)
            batch = self._next_batch(queue)
            if not batch:
                continue
            async with self._workers:
                try:
                    await self._run_batch(queue, batch)
                except Exception as e:
                    # A broken batch must not strand the operations queued behind it
                    log_stage(
                        logger,
                        "BQ.6",
                        "Batch aborted unexpectedly",
                        level="error",
                        tenant_id=queue.tenant_id,
                        sheet=queue.sheet_title,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    self._fail(batch, TenantSheetsError.from_exception(e, tenant_id=queue.tenant_id))

        if not queue.pending and self._queues.get(queue.key) is queue:
            del self._queues[queue.key]

    async def _wait_for_window(self, queue: SheetQueue) -> None:
        """Give a run of ADD_ROWS time to grow, up to the window or the row bound."""
        head = queue.pending[0]
        if head.kind is not OperationKind.ADD_ROWS or self._batch_window <= 0:
            return
        remaining = head.enqueued_at + self._batch_window - self._clock()
        if remaining <= 0 or queue.head_rows() >= self._batch_max_rows or queue.head_run_closed():
            return
        queue.wakeup.clear()
        try:
            await asyncio.wait_for(queue.wakeup.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            pass

    def _next_batch(self, queue: SheetQueue) -> list[QueueOperation]:
        batch: list[QueueOperation] = []
        rows = 0
        while queue.pending:
            op = queue.pending[0]
            if batch:
                if op.kind is not OperationKind.ADD_ROWS or batch[0].kind is not OperationKind.ADD_ROWS:
                    break
                if rows + op.row_count > self._batch_max_rows:
                    break
            batch.append(queue.pending.popleft())
            rows += op.row_count
            if op.kind is not OperationKind.ADD_ROWS:
                break
        return batch

    async def _run_batch(self, queue: SheetQueue, batch: list[QueueOperation]) -> None:
        """
        Apply one batch, retrying it as a whole until it succeeds or fails terminally.

        STAGE-BQ.2 .. BQ.6
        """
        kind = batch[0].kind
        bind_log_context(tenant_id=queue.tenant_id, op_id=batch[0].op_id)
        log_stage(
            logger,
            "BQ.2",
            "Batch started",
            sheet=queue.sheet_title,
            kind=kind.value,
            operations=len(batch),
            rows=sum(op.row_count for op in batch),
        )

        attempt = 0
        throttled_for = 0.0
        while True:
            try:
                tenant = self._registry.resolve(queue.tenant_id)
                decision = self._rate_limiter.admit(tenant, batch[0].client_ip)
            except TenantSheetsError as e:
                self._fail(batch, e)
                return

            if not decision.allowed:
                if throttled_for + decision.retry_after > self._throttle_max_wait:
                    self._fail(
                        batch,
                        ThrottledError(
                            "Write admission still throttled after waiting",
                            retry_after=decision.retry_after,
                            tenant_id=queue.tenant_id,
                            details={"waited": round(throttled_for, 3), "scope": decision.scope.value},
                        ),
                    )
                    return
                self._throttle_waits += 1
                self._metrics.record_throttle("queue")
                log_stage(
                    logger,
                    "BQ.3",
                    "Throttled, waiting for admission",
                    level="warning",
                    sheet=queue.sheet_title,
                    retry_after=round(decision.retry_after, 3),
                )
                await self._sleep(decision.retry_after)
                throttled_for += decision.retry_after
                continue

            # Drop operations whose caller cancelled while they were still pending
            batch[:] = [op for op in batch if not op.is_terminal]
            if not batch:
                return

            attempt += 1
            now = self._clock()
            for op in batch:
                op.attempts = attempt
                op.transition(OperationState.IN_FLIGHT, at=now)

            try:
                self._remote_calls += 1
                result = await self._execute(queue, batch)
            except TenantSheetsError as e:
                error = e
            except Exception as e:
                error = TenantSheetsError.from_exception(e, tenant_id=queue.tenant_id)
            else:
                self._complete(queue, batch, result)
                return

            if error.retryable and attempt < self._max_attempts:
                delay = self._backoff.delay(attempt)
                now = self._clock()
                for op in batch:
                    op.transition(OperationState.RETRYING, at=now, delay=delay, error=error.kind)
                self._retries += 1
                self._metrics.record_retry(kind.value, error.kind)
                log_stage(
                    logger,
                    "BQ.4",
                    "Transient failure, retrying batch",
                    level="warning",
                    sheet=queue.sheet_title,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    delay=round(delay, 3),
                    error=error.kind,
                )
                await self._sleep(delay)
                continue

            if error.retryable:
                exhausted = RetriesExhaustedError(
                    f"Write failed after {attempt} attempts",
                    tenant_id=queue.tenant_id,
                    details={"attempts": attempt, "last_error": error.kind, "sheet": queue.sheet_title},
                )
                exhausted.__cause__ = error
                error = exhausted
            elif len(batch) > 1 and error.kind == InvalidOperationError.kind:
                await self._split_batch(queue, batch, error)
                return
            self._fail(batch, error)
            return

    async def _split_batch(self, queue: SheetQueue, batch: list[QueueOperation], error: TenantSheetsError) -> None:
        """
        Re-run a rejected coalesced batch one operation at a time.

        One caller's malformed rows fail only that caller. Operations run in
        enqueue order before the next batch, so per-sheet ordering holds.
        """
        self._splits += 1
        now = self._clock()
        for op in batch:
            op.transition(OperationState.RETRYING, at=now, error=error.kind)
        log_stage(
            logger,
            "BQ.4",
            "Coalesced batch rejected, applying operations one by one",
            level="warning",
            sheet=queue.sheet_title,
            operations=len(batch),
            error=error.kind,
        )
        for op in batch:
            await self._run_batch(queue, [op])

    async def _execute(self, queue: SheetQueue, batch: list[QueueOperation]) -> Any:
        async with self._pool.lease(queue.tenant_id) as handle:
            try:
                return await asyncio.wait_for(self._apply(queue, handle, batch), timeout=self._remote_timeout)
            except asyncio.TimeoutError as e:
                raise RemoteTimeoutError(
                    "Remote write timed out",
                    tenant_id=queue.tenant_id,
                    details={"timeout": self._remote_timeout, "sheet": queue.sheet_title},
                ) from e

    async def _apply(self, queue: SheetQueue, handle: ConnectionHandle, batch: list[QueueOperation]) -> Any:
        if queue.sheet is None or queue.sheet_handle_id != handle.handle_id:
            queue.sheet = await handle.document.sheet(queue.sheet_title)
            queue.sheet_handle_id = handle.handle_id

        op = batch[0]
        if op.kind is OperationKind.ADD_ROWS:
            return await queue.sheet.add_rows([row for item in batch for row in item.payload["rows"]])
        if op.kind is OperationKind.UPDATE_ROW:
            return await queue.sheet.update_row(op.payload["row_number"], op.payload["values"])
        await queue.sheet.delete_row(op.payload["row_number"])
        return None

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _complete(self, queue: SheetQueue, batch: list[QueueOperation], result: Any) -> None:
        """Invalidate the cache, then resolve each future with its slice of the result."""
        kind = batch[0].kind
        self._invalidator.on_write_completed(queue.tenant_id, queue.sheet_title, kind)

        now = self._clock()
        offset = 0
        for op in batch:
            if kind is OperationKind.ADD_ROWS:
                value = result[offset:offset + op.row_count]
                offset += op.row_count
            else:
                value = result
            op.transition(OperationState.SUCCEEDED, at=now)
            self._operations.pop(op.op_id, None)
            self._metrics.record_operation(kind.value, "success", now - op.enqueued_at)
            if op.future.done():
                self._discarded += 1
                log_stage(logger, "BQ.7", "Result discarded, caller gone", op_id=op.op_id)
            else:
                op.future.set_result(value)

        self._succeeded += len(batch)
        self._batches += 1
        self._batched_ops += len(batch)
        self._calls_saved += len(batch) - 1
        self._metrics.set_queue_depth(self.depth())
        log_stage(
            logger,
            "BQ.5",
            "Batch succeeded",
            sheet=queue.sheet_title,
            kind=kind.value,
            operations=len(batch),
            attempts=batch[0].attempts,
        )

    def _fail(self, batch: list[QueueOperation], error: TenantSheetsError) -> None:
        now = self._clock()
        batch = [op for op in batch if not op.is_terminal]
        if not batch:
            return
        for op in batch:
            op.transition(OperationState.FAILED, at=now, error=error.kind)
            self._operations.pop(op.op_id, None)
            self._metrics.record_operation(op.kind.value, "failure", now - op.enqueued_at)
            if not op.future.done():
                op.future.set_exception(error)

        self._failed += len(batch)
        self._batches += 1
        self._batched_ops += len(batch)
        self._metrics.record_error(error.kind, "BQ.6")
        self._metrics.set_queue_depth(self.depth())
        log_stage(
            logger,
            "BQ.6",
            "Batch failed",
            level="error",
            tenant_id=batch[0].tenant_id,
            sheet=batch[0].sheet_title,
            operations=len(batch),
            attempts=batch[0].attempts,
            error=error.kind,
            error_message=error.message,
        )

    # =========================================================================
    # Flush / shutdown
    # =========================================================================

    def _live_futures(self, tenant_id: str | None = None) -> list[asyncio.Future]:
        return [
            op.future for op in self._operations.values()
            if tenant_id is None or op.tenant_id == tenant_id
        ]

    async def flush_tenant(self, tenant_id: str) -> None:
        """Wait until every operation of a tenant queued so far is terminal."""
        futures = self._live_futures(tenant_id)
        if futures:
            await asyncio.wait(futures)

    async def flush_all(self) -> None:
        futures = self._live_futures()
        if futures:
            await asyncio.wait(futures)

    async def shutdown(self, drain: bool = True) -> None:
        """
        Stop accepting writes.

        STAGE-BQ.8: Shutdown

        drain=True waits for every queued operation; drain=False rejects the
        pending ones with QueueShutdownError and stops the drain tasks.
        """
        self._closed = True
        if drain:
            await self.flush_all()
        else:
            error = QueueShutdownError("Batch queue shut down before the write was applied")
            now = self._clock()
            for queue in list(self._queues.values()):
                queue.pending.clear()
                if queue.drain_task is not None:
                    queue.drain_task.cancel()
            # Includes operations waiting to be re-run alone after a split
            for op in list(self._operations.values()):
                if not op.is_terminal:
                    op.transition(OperationState.FAILED, at=now, error=error.kind)
                    self._failed += 1
                self._operations.pop(op.op_id, None)
                if not op.future.done():
                    op.future.set_exception(error)

        tasks = [q.drain_task for q in self._queues.values() if q.drain_task is not None]
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Exception):
                log_stage(logger, "BQ.8", "Drain task ended with error", level="error", error=str(result))
        self._queues.clear()
        self._metrics.set_queue_depth(0)
        logger.info("Batch queue shut down", stage="BQ.8", drained=drain)

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_operation(self, op_id: str) -> QueueOperation | None:
        """Return a not-yet-terminal operation by id."""
        return self._operations.get(op_id)

    def depth(self, tenant_id: str | None = None) -> int:
        return sum(
            len(q.pending) for q in self._queues.values()
            if tenant_id is None or q.tenant_id == tenant_id
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> dict[str, Any]:
        return {
            "enqueued": self._enqueued,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "cancelled": self._cancelled,
            "discarded": self._discarded,
            "batches": self._batches,
            "remote_calls": self._remote_calls,
            "calls_saved": self._calls_saved,
            "retries": self._retries,
            "throttle_waits": self._throttle_waits,
            "split_batches": self._splits,
            "avg_batch_size": round(self._batched_ops / self._batches, 3) if self._batches else 0.0,
            "in_flight": len(self._operations),
            "queue_depths": {
                f"{tenant}:{sheet}": len(q.pending) for (tenant, sheet), q in self._queues.items()
            },
            "closed": self._closed,
        }
