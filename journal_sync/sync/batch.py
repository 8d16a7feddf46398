"""
Batch processing of sync operations.

Operations are sliced into fixed-size chunks. Each chunk runs in one
transaction, in dependency order, with every operation inside its own
savepoint: a failing operation is rolled back and reported alone while its
siblings commit. If the chunk itself fails (dependency cycle, lost
connection, failed commit) every operation in it is reported failed.

Chunks run concurrently and are assumed not to touch the same entities.
Two operations on one entity placed in different chunks can race.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import asyncpg

from ..db.models import FailedOperation, SyncOperation, SyncResult, SyncResultStatus
from ..db.repository import EntityStore
from .errors import DependencyCycleError, SyncError
from .monitoring import SyncMetric, SyncMonitor

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ApplyFn = Callable[[EntityStore, SyncOperation], Awaitable[Any]]


@dataclass
class BatchResult:
    successful: list[SyncResult] = field(default_factory=list)
    failed: list[FailedOperation] = field(default_factory=list)

    def merge(self, other: "BatchResult") -> None:
        self.successful.extend(other.successful)
        self.failed.extend(other.failed)

    @classmethod
    def all_failed(cls, operations: Sequence[SyncOperation], error: str) -> "BatchResult":
        return cls(failed=[failed_operation(op, error) for op in operations])


def failed_operation(operation: SyncOperation, error: str) -> FailedOperation:
    return FailedOperation(
        id=operation.id,
        error=error,
        entity_type=operation.entity_type.value,
        entity_id=operation.entity_id,
        operation_type=operation.type.value if operation.type else None,
    )


def chunk(items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into consecutive slices of at most ``size``."""
    if size < 1:
        raise ValueError("Chunk size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def sort_by_dependencies(operations: Sequence[SyncOperation]) -> list[SyncOperation]:
    """
    Depth-first topological order: dependencies come before their dependents.

    Dependencies that are not part of ``operations`` are ignored. Otherwise
    input order is kept.
    """
    by_id = {op.id: op for op in operations}
    visited: set[str] = set()
    visiting: set[str] = set()
    ordered: list[SyncOperation] = []

    def visit(op: SyncOperation) -> None:
        if op.id in visited:
            return
        if op.id in visiting:
            raise DependencyCycleError(op.id)
        visiting.add(op.id)
        for dependency_id in op.dependencies:
            dependency = by_id.get(dependency_id)
            if dependency is not None:
                visit(dependency)
        visiting.discard(op.id)
        visited.add(op.id)
        ordered.append(op)

    for op in operations:
        visit(op)
    return ordered


class BatchProcessor:
    """Chunked, transactional, dependency-aware application of operations."""

    def __init__(self, store: EntityStore, monitor: Optional[SyncMonitor] = None):
        self.store = store
        self.monitor = monitor

    async def process_operations_with_dependencies(
        self,
        operations: Sequence[SyncOperation],
        tx: EntityStore,
        apply: ApplyFn,
    ) -> BatchResult:
        """Apply operations in dependency order, recording each outcome independently."""
        result = BatchResult()
        for op in sort_by_dependencies(operations):
            started = time.perf_counter()
            try:
                async with tx.transaction() as op_tx:
                    data = await apply(op_tx, op)
            except (SyncError, asyncpg.PostgresError) as e:
                logger.warning(f"Operation {op.id} ({op.entity_type.value}) failed: {e}")
                result.failed.append(failed_operation(op, str(e)))
                continue
            result.successful.append(
                SyncResult(
                    id=op.id,
                    status=SyncResultStatus.SUCCESS,
                    data=data,
                    entity_type=op.entity_type.value,
                    processing_time_ms=(time.perf_counter() - started) * 1000,
                )
            )
        return result

    async def process_in_transaction(
        self,
        operations: Sequence[SyncOperation],
        apply: ApplyFn,
    ) -> BatchResult:
        """Run one chunk in a single transaction; a chunk-level error fails all of it."""
        try:
            async with self.store.transaction() as tx:
                return await self.process_operations_with_dependencies(operations, tx, apply)
        except Exception as e:
            logger.error(f"Batch transaction failed for {len(operations)} operation(s): {e}")
            return BatchResult.all_failed(operations, f"Transaction failed: {e}")

    async def process_chunks(
        self,
        operations: Sequence[SyncOperation],
        apply: ApplyFn,
        batch_size: int = 100,
        max_concurrency: int = 10,
        timeout_ms: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> BatchResult:
        """
        Process all chunks concurrently and merge their results.

        ``timeout_ms`` is advisory: a slow chunk is logged, never cancelled.
        """
        chunks = chunk(operations, batch_size)
        semaphore = asyncio.Semaphore(max_concurrency)

        async def run(index: int, chunk_operations: list[SyncOperation]) -> BatchResult:
            async with semaphore:
                started = time.perf_counter()
                chunk_result = await self.process_in_transaction(chunk_operations, apply)
                elapsed_ms = (time.perf_counter() - started) * 1000
            if timeout_ms is not None and elapsed_ms > timeout_ms:
                logger.warning(f"Chunk {index} took {elapsed_ms:.0f}ms (budget {timeout_ms}ms)")
            if self.monitor is not None:
                self.monitor.record_metric(
                    SyncMetric(
                        operation="batch_chunk",
                        entity_type="mixed",
                        duration_ms=elapsed_ms,
                        entity_count=len(chunk_operations),
                        success=not chunk_result.failed,
                        error_message=chunk_result.failed[0].error if chunk_result.failed else None,
                        user_id=user_id,
                        details={"chunk": index, "failed": len(chunk_result.failed)},
                    )
                )
            return chunk_result

        outcomes = await asyncio.gather(
            *(run(i, c) for i, c in enumerate(chunks)),
            return_exceptions=True,
        )

        result = BatchResult()
        for chunk_operations, outcome in zip(chunks, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Chunk of {len(chunk_operations)} operation(s) failed: {outcome}")
                result.merge(BatchResult.all_failed(chunk_operations, str(outcome)))
            else:
                result.merge(outcome)
        return result


async def process_concurrently(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    concurrency: int = 10,
) -> list[R]:
    """
    Run ``fn`` over ``items`` in slices of ``concurrency``.

    Failed items are logged and left out of the result.
    """
    results: list[R] = []
    for batch in chunk(items, max(concurrency, 1)):
        outcomes = await asyncio.gather(*(fn(item) for item in batch), return_exceptions=True)
        for item, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Concurrent task failed for {item!r}: {outcome}")
            else:
                results.append(outcome)
    return results
