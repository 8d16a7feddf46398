"""
Tests for chunked, transactional batch processing.

Run with: pytest tests/test_batch_processor.py -v
"""

import asyncio

import pytest

from journal_sync.db.models import EntityType, SyncOperation, TripRole
from journal_sync.sync.batch import (
    BatchProcessor,
    chunk,
    process_concurrently,
    sort_by_dependencies,
)
from journal_sync.sync.errors import DependencyCycleError, InvalidOperationError
from journal_sync.sync.operations import OperationApplier

from .fakes import InMemoryStore


def run_async(coro):
    """Helper to run async coroutines in sync tests."""
    return asyncio.run(coro)


def op(op_id, data=None, entity_type="Memory", op_type="CREATE", dependencies=None):
    return SyncOperation.model_validate({
        "id": op_id,
        "type": op_type,
        "entityType": entity_type,
        "data": data if data is not None else {"id": f"{op_id}-entity", "title": op_id, "tripId": "t1"},
        "dependencies": dependencies or [],
    })


@pytest.fixture
def seeded_store():
    store = InMemoryStore()
    store.put(EntityType.TRIP, id="t1", name="Lisbon")
    store.add_member("t1", "u1", TripRole.EDITOR)
    return store


class TestChunk:
    """Test slicing operations into chunks."""

    def test_even_split(self):
        assert chunk([1, 2, 3, 4], 2) == [[1, 2], [3, 4]]

    def test_remainder_goes_last(self):
        assert chunk([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_empty(self):
        assert chunk([], 3) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            chunk([1], 0)


class TestSortByDependencies:
    """Test dependency ordering."""

    def test_dependencies_come_first(self):
        a = op("a", dependencies=["b"])
        b = op("b")
        assert [o.id for o in sort_by_dependencies([a, b])] == ["b", "a"]

    def test_input_order_kept_without_dependencies(self):
        ops = [op("x"), op("y"), op("z")]
        assert [o.id for o in sort_by_dependencies(ops)] == ["x", "y", "z"]

    def test_transitive_dependencies(self):
        ops = [op("c", dependencies=["b"]), op("b", dependencies=["a"]), op("a")]
        assert [o.id for o in sort_by_dependencies(ops)] == ["a", "b", "c"]

    def test_missing_dependency_is_ignored(self):
        ops = [op("a", dependencies=["elsewhere"])]
        assert [o.id for o in sort_by_dependencies(ops)] == ["a"]

    def test_cycle_raises(self):
        ops = [op("a", dependencies=["b"]), op("b", dependencies=["a"])]
        with pytest.raises(DependencyCycleError):
            sort_by_dependencies(ops)


class TestBatchProcessor:
    """Test chunk processing against the in-memory store."""

    def test_all_operations_apply(self, seeded_store, monitor):
        processor = BatchProcessor(seeded_store, monitor)
        ops = [op(f"op{i}") for i in range(5)]
        result = run_async(processor.process_chunks(ops, OperationApplier("u1").apply, batch_size=2))
        assert len(result.successful) == 5
        assert result.failed == []
        assert seeded_store.get(EntityType.MEMORY, "op3-entity")["creator_id"] == "u1"

    def test_failing_operation_does_not_roll_back_siblings(self, seeded_store):
        processor = BatchProcessor(seeded_store)
        ops = [
            op("ok-1"),
            op("denied", data={"id": "x", "title": "x", "tripId": "other-trip"}),
            op("ok-2"),
        ]
        result = run_async(processor.process_chunks(ops, OperationApplier("u1").apply, batch_size=10))
        assert [r.id for r in result.successful] == ["ok-1", "ok-2"]
        assert [f.id for f in result.failed] == ["denied"]
        assert seeded_store.get(EntityType.MEMORY, "x") is None
        assert seeded_store.get(EntityType.MEMORY, "ok-2-entity") is not None

    def test_dependencies_are_applied_in_order(self):
        store = InMemoryStore()
        ops = [
            op("memory", data={"id": "m1", "title": "Day one", "tripId": "trip-new"}, dependencies=["trip"]),
            op("trip", entity_type="Trip", data={"id": "trip-new", "name": "Porto"}),
        ]
        result = run_async(BatchProcessor(store).process_chunks(ops, OperationApplier("u1").apply))
        assert result.failed == []
        assert [r.id for r in result.successful] == ["trip", "memory"]
        assert run_async(store.memberships.get_role("trip-new", "u1")) == TripRole.OWNER

    def test_cycle_fails_whole_chunk(self, seeded_store):
        ops = [op("a", dependencies=["b"]), op("b", dependencies=["a"]), op("c")]
        result = run_async(BatchProcessor(seeded_store).process_chunks(ops, OperationApplier("u1").apply))
        assert result.successful == []
        assert {f.id for f in result.failed} == {"a", "b", "c"}
        assert all(f.error.startswith("Transaction failed:") for f in result.failed)

    def test_unexpected_error_rolls_back_the_chunk(self, seeded_store):
        applier = OperationApplier("u1")

        async def apply(tx, operation):
            if operation.id == "boom":
                raise RuntimeError("connection lost")
            return await applier.apply(tx, operation)

        ops = [op("first"), op("boom"), op("third")]
        result = run_async(BatchProcessor(seeded_store).process_chunks(ops, apply, batch_size=10))
        assert result.successful == []
        assert len(result.failed) == 3
        assert result.failed[0].error == "Transaction failed: connection lost"
        assert seeded_store.get(EntityType.MEMORY, "first-entity") is None

    def test_chunk_failure_is_isolated_to_its_chunk(self, seeded_store):
        async def apply(tx, operation):
            if operation.id == "boom":
                raise RuntimeError("connection lost")
            return await OperationApplier("u1").apply(tx, operation)

        ops = [op("a"), op("b"), op("boom"), op("d")]
        result = run_async(BatchProcessor(seeded_store).process_chunks(ops, apply, batch_size=2))
        assert {r.id for r in result.successful} == {"a", "b"}
        assert {f.id for f in result.failed} == {"boom", "d"}

    def test_records_chunk_metrics(self, seeded_store, monitor):
        ops = [op(f"op{i}") for i in range(3)]
        run_async(BatchProcessor(seeded_store, monitor).process_chunks(
            ops, OperationApplier("u1").apply, batch_size=1, user_id="u1"
        ))
        chunk_metrics = [m for m in monitor.metrics if m.operation == "batch_chunk"]
        assert len(chunk_metrics) == 3
        assert all(m.success and m.user_id == "u1" for m in chunk_metrics)

    def test_operation_results_carry_timing(self, seeded_store):
        result = run_async(BatchProcessor(seeded_store).process_chunks([op("a")], OperationApplier("u1").apply))
        assert result.successful[0].processing_time_ms is not None
        assert result.successful[0].data["title"] == "a"


class TestProcessConcurrently:
    """Test bounded concurrent mapping."""

    def test_failures_are_dropped(self):
        async def fn(item):
            if item == 2:
                raise InvalidOperationError("bad")
            return item * 10

        assert run_async(process_concurrently([1, 2, 3], fn, concurrency=2)) == [10, 30]

    def test_empty_input(self):
        async def fn(item):
            return item

        assert run_async(process_concurrently([], fn)) == []
