"""
Sync entry points: conflict-aware sync and batch sync.

Conflict-aware sync handles operations one at a time: each one reads and
then writes its entity, and interleaving two of them on the same entity
without row locks could lose an update. Batch sync trades that safety for
throughput and processes chunks concurrently.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Union

from pydantic import ValidationError

from ..core.config import Settings, get_settings
from ..db.models import (
    BatchSyncOptions,
    BatchSyncResponse,
    ConflictAwareSyncResponse,
    ConflictInfo,
    ConflictStrategy,
    FailedOperation,
    SyncOperation,
    SyncResult,
    SyncResultStatus,
    TripRole,
    Winner,
    get_entity_definition,
)
from ..db.repository import EntityStore
from .batch import BatchProcessor, failed_operation
from .detector import ConflictDetector
from .errors import InvalidOperationError
from .monitoring import SyncMetric, SyncMonitor
from .operations import OperationApplier, find_existing, parse_payload
from .resolver import ConflictResolutionEngine

logger = logging.getLogger(__name__)


def raw_operation_id(raw: Any, index: int) -> str:
    """The id to report for a raw operation, even a malformed one."""
    if isinstance(raw, dict) and raw.get("id"):
        return str(raw["id"])
    return f"operation-{index}"


def parse_operation(raw: Any, index: int) -> SyncOperation:
    """Validate one raw operation, turning schema errors into InvalidOperationError."""
    if not isinstance(raw, dict):
        raise InvalidOperationError(f"Operation {index} is not an object")
    try:
        return SyncOperation.model_validate(raw)
    except ValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'operation'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidOperationError(f"Operation {index} is invalid: {messages}")


def _raw_failure(raw: Any, index: int, error: str) -> FailedOperation:
    entity_type = raw.get("entityType") if isinstance(raw, dict) else None
    return FailedOperation(
        id=raw_operation_id(raw, index),
        error=error,
        entity_type=str(entity_type) if entity_type else None,
    )


class SyncOrchestrator:
    """Runs client sync requests against the store."""

    def __init__(
        self,
        store: EntityStore,
        engine: ConflictResolutionEngine,
        monitor: SyncMonitor,
        detector: Optional[ConflictDetector] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.engine = engine
        self.monitor = monitor
        self.settings = settings or get_settings()
        self.detector = detector or ConflictDetector(self.settings.conflict_window_seconds)

    # ------------------------------------------------------------------
    # Conflict-aware sync
    # ------------------------------------------------------------------

    async def conflict_aware_sync(
        self,
        raw_operations: Sequence[Any],
        device_id: str,
        user_id: str,
        strategy: Optional[Union[ConflictStrategy, str]] = None,
    ) -> ConflictAwareSyncResponse:
        """
        Apply operations sequentially, resolving conflicts with ``strategy``.

        Results are keyed by operation id; their position in the response
        lists says nothing about input order.
        """
        strategy = strategy or self.settings.default_conflict_strategy
        applier = OperationApplier(user_id)
        response = ConflictAwareSyncResponse(total_processed=len(raw_operations))

        logger.info(
            f"Conflict-aware sync of {len(raw_operations)} operation(s) from device {device_id} "
            f"(user {user_id}, strategy {strategy})"
        )

        async with self.monitor.measure("conflict_aware_sync", user_id=user_id) as measurement:
            for index, raw in enumerate(raw_operations):
                operation: Optional[SyncOperation] = None
                try:
                    operation = parse_operation(raw, index)
                    await self._sync_operation(operation, applier, device_id, user_id, strategy, response)
                except Exception as e:
                    logger.warning(f"Operation {raw_operation_id(raw, index)} failed: {e}")
                    if operation is not None:
                        response.failed.append(failed_operation(operation, str(e)))
                    else:
                        response.failed.append(_raw_failure(raw, index, str(e)))
            measurement["entity_count"] = len(raw_operations)
            measurement["details"] = {
                "resolved": len(response.resolved),
                "conflicts": len(response.conflicts),
                "failed": len(response.failed),
            }

        logger.info(
            f"Conflict-aware sync done: {len(response.resolved)} applied, "
            f"{len(response.conflicts)} conflict(s), {len(response.failed)} failed"
        )
        return response

    async def _sync_operation(
        self,
        operation: SyncOperation,
        applier: OperationApplier,
        device_id: str,
        user_id: str,
        strategy: Union[ConflictStrategy, str],
        response: ConflictAwareSyncResponse,
    ) -> None:
        entity_id = operation.entity_id
        if not entity_id:
            raise InvalidOperationError("Operation data must contain an id or serverId")

        definition = get_entity_definition(operation.entity_type)
        remote = parse_payload(definition, operation.data)
        existing = await find_existing(self.store.repository(definition.entity_type), entity_id)

        if existing is not None:
            detection = self.detector.detect(existing, remote)
            if detection.has_conflict:
                logger.warning(
                    f"Conflict on {definition.entity_type.value}:{existing['id']} "
                    f"({detection.conflict_type.value}: {', '.join(detection.conflicted_fields)})"
                )
                await applier.authorize(self.store, definition, existing, TripRole.EDITOR)
                conflict_id = await self.engine.log_conflict(
                    definition.entity_type,
                    existing,
                    remote,
                    strategy,
                    device_id=device_id,
                    user_id=user_id,
                )
                try:
                    async with self.store.transaction() as tx:
                        resolution = await self.engine.apply_strategy(
                            conflict_id,
                            existing,
                            remote,
                            strategy,
                            device_id=device_id,
                            user_id=user_id,
                            conflict_log=tx.transactional_conflict_log,
                        )
                        resolved = {**resolution.resolved_entity, "id": existing["id"]}
                        # The winning version may move the entity to another trip
                        await applier.authorize(tx, definition, {**existing, **resolved}, TripRole.EDITOR)
                        saved = await applier.save(tx, definition, resolved)
                except Exception as e:
                    await self.engine.record_failure(conflict_id, e)
                    raise
                response.conflicts.append(
                    ConflictInfo(
                        conflict_id=resolution.conflict_id,
                        entity_type=definition.entity_type.value,
                        entity_id=existing["id"],
                        resolution=resolution.metadata,
                        strategy=resolution.strategy,
                    )
                )
                response.resolved.append(
                    SyncResult(
                        id=operation.id,
                        status=SyncResultStatus.RESOLVED,
                        data=definition.serialize(saved),
                        conflict_id=resolution.conflict_id,
                        entity_type=definition.entity_type.value,
                    )
                )
                return

        async with self.store.transaction() as tx:
            data = await applier.apply(tx, operation)
        response.resolved.append(
            SyncResult(
                id=operation.id,
                status=SyncResultStatus.SUCCESS,
                data=data,
                entity_type=definition.entity_type.value,
            )
        )

    async def resolve_pending_conflict(
        self,
        conflict_id: str,
        choice: Winner,
        user_id: str,
    ) -> SyncResult:
        """Persist the user's decision for a conflict deferred with userChoice."""
        entry, chosen = await self.engine.load_user_choice(conflict_id, choice, user_id)
        definition = get_entity_definition(entry.entity_type)
        applier = OperationApplier(user_id)
        chosen = {**chosen, "id": entry.entity_id}

        # The entry stays pending_user_choice unless the save commits
        async with self.store.transaction() as tx:
            existing = await tx.repository(definition.entity_type).get_by_id(entry.entity_id)
            if existing is not None:
                await applier.authorize(tx, definition, existing, TripRole.EDITOR)
            await applier.authorize(tx, definition, {**(existing or {}), **chosen}, TripRole.EDITOR)
            saved = await applier.save(tx, definition, chosen)
            await self.engine.complete_user_choice(
                entry, choice, conflict_log=tx.transactional_conflict_log
            )
        return SyncResult(
            id=conflict_id,
            status=SyncResultStatus.RESOLVED,
            data=definition.serialize(saved),
            conflict_id=conflict_id,
            entity_type=definition.entity_type.value,
        )

    # ------------------------------------------------------------------
    # Batch sync
    # ------------------------------------------------------------------

    def validate_operations(
        self,
        raw_operations: Sequence[Any],
        skip_validation: bool = False,
    ) -> tuple[list[SyncOperation], list[FailedOperation]]:
        """
        Split raw operations into valid ones and failures.

        Structure is always checked; ``skip_validation`` only defers the
        entity payload check to apply time.
        """
        valid: list[SyncOperation] = []
        failed: list[FailedOperation] = []
        for index, raw in enumerate(raw_operations):
            try:
                operation = parse_operation(raw, index)
                if not skip_validation:
                    parse_payload(get_entity_definition(operation.entity_type), operation.data)
            except InvalidOperationError as e:
                failed.append(_raw_failure(raw, index, str(e)))
                continue
            valid.append(operation)
        return valid, failed

    async def batch_sync(
        self,
        raw_operations: Sequence[Any],
        user_id: str,
        options: Optional[BatchSyncOptions] = None,
    ) -> BatchSyncResponse:
        started = time.perf_counter()
        timestamp = datetime.now(timezone.utc)
        options = options or BatchSyncOptions()
        batch_size = options.batch_size or self.settings.batch_size
        max_concurrency = options.max_concurrency or self.settings.batch_max_concurrency
        timeout_ms = options.timeout or self.settings.batch_timeout_ms
        total = len(raw_operations)

        if total > self.settings.max_batch_operations:
            error = f"Too many operations in one batch (maximum: {self.settings.max_batch_operations})"
            logger.error(f"Rejecting batch of {total} operations: {error}")
            return BatchSyncResponse(
                failed=[_raw_failure(raw, i, error) for i, raw in enumerate(raw_operations)],
                processed=total,
                duration=(time.perf_counter() - started) * 1000,
                timestamp=timestamp,
                success_rate=0.0,
                performance_metrics={"error": error},
            )

        valid, failed = self.validate_operations(raw_operations, options.skip_validation)
        logger.info(
            f"Batch sync of {total} operation(s) for user {user_id}: "
            f"{len(valid)} valid, batch size {batch_size}, concurrency {max_concurrency}"
        )

        applier = OperationApplier(user_id)
        processor = BatchProcessor(self.store, self.monitor)
        result = await processor.process_chunks(
            valid,
            applier.apply,
            batch_size=batch_size,
            max_concurrency=max_concurrency,
            timeout_ms=timeout_ms,
            user_id=user_id,
        )
        failed.extend(result.failed)

        duration = (time.perf_counter() - started) * 1000
        success_rate = len(result.successful) / total if total else 0.0
        self.monitor.record_metric(
            _batch_metric(total, duration, len(failed), batch_size, max_concurrency, user_id)
        )
        logger.info(
            f"Batch sync done in {duration:.0f}ms: {len(result.successful)} succeeded, {len(failed)} failed"
        )

        return BatchSyncResponse(
            successful=result.successful,
            failed=failed,
            processed=total,
            duration=duration,
            timestamp=timestamp,
            success_rate=success_rate,
            performance_metrics={
                "total_operations": total,
                "duration_ms": round(duration, 2),
                "throughput": round(total / (duration / 1000), 2) if duration and total else 0.0,
                "success_rate": round(success_rate, 4),
                "success_count": len(result.successful),
                "fail_count": len(failed),
                "batch_size": batch_size,
                "max_concurrency": max_concurrency,
                "timeout_ms": timeout_ms,
            },
        )


def _batch_metric(total, duration, failed_count, batch_size, max_concurrency, user_id):
    return SyncMetric(
        operation="batch_sync",
        entity_type="mixed",
        duration_ms=duration,
        entity_count=total,
        success=failed_count == 0,
        error_message=f"{failed_count} operation(s) failed" if failed_count else None,
        user_id=user_id,
        batch_size=batch_size,
        concurrency=max_concurrency,
    )
