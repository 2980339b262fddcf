"""
Resilience layer: pooled document handles and the batched write queue.
"""

from tenant_sheets.core.resilience.batch_queue import (
    BackoffPolicy,
    BatchQueueManager,
    OperationTransition,
    QueueOperation,
    SheetQueue,
)
from tenant_sheets.core.resilience.connection_pool_manager import (
    ConnectionHandle,
    DocumentConnectionPool,
)

__all__ = [
    "BackoffPolicy",
    "BatchQueueManager",
    "ConnectionHandle",
    "DocumentConnectionPool",
    "OperationTransition",
    "QueueOperation",
    "SheetQueue",
]
