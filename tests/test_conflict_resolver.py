"""
Tests for the conflict resolution engine.

Run with: pytest tests/test_conflict_resolver.py -v
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from journal_sync.db.models import (
    ConflictStatus,
    ConflictStrategy,
    DeviceCreate,
    DeviceType,
    EntityType,
    Winner,
)
from journal_sync.sync.devices import DeviceRegistry
from journal_sync.sync.errors import (
    AccessDeniedError,
    EntityNotFoundError,
    InvalidOperationError,
    UnknownStrategyError,
)
from journal_sync.sync.resolver import (
    ConflictResolutionEngine,
    parse_timeframe,
    serialize_snapshot,
)

from .fakes import InMemoryStore

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def run_async(coro):
    """Helper to run async coroutines in sync tests."""
    return asyncio.run(coro)


def make_engine(store: InMemoryStore, threshold: int = 5) -> ConflictResolutionEngine:
    return ConflictResolutionEngine(store.conflict_log, DeviceRegistry(store.devices), threshold)


LOCAL = {"id": "m1", "title": "A", "text": "same", "created_at": T0 - timedelta(days=1), "updated_at": T0}
REMOTE = {"id": "m1", "title": "B", "text": "same", "updated_at": T0 + timedelta(seconds=60)}


class TestHelpers:
    """Test module-level helpers."""

    def test_parse_timeframe_units(self):
        assert parse_timeframe("12h") == timedelta(hours=12)
        assert parse_timeframe("7d") == timedelta(days=7)
        assert parse_timeframe("2w") == timedelta(weeks=2)

    def test_parse_timeframe_defaults_to_one_day(self):
        assert parse_timeframe("soon") == timedelta(hours=24)
        assert parse_timeframe("") == timedelta(hours=24)

    def test_snapshot_is_sorted_json_with_iso_dates(self):
        snapshot = serialize_snapshot({"b": 1, "a": T0})
        assert json.loads(snapshot) == {"a": T0.isoformat(), "b": 1}
        assert snapshot.index('"a"') < snapshot.index('"b"')


class TestConflictIds:
    """Test conflict id generation."""

    def test_ids_are_distinct_for_same_entity(self):
        engine = make_engine(InMemoryStore())
        ids = {engine.generate_conflict_id("Memory", "m1") for _ in range(200)}
        assert len(ids) == 200

    def test_ids_are_distinct_across_engines(self):
        store = InMemoryStore()
        first = make_engine(store).generate_conflict_id("Memory", "m1")
        second = make_engine(store).generate_conflict_id("Memory", "m1")
        assert first != second

    def test_id_format(self):
        conflict_id = make_engine(InMemoryStore()).generate_conflict_id("Trip", "t1")
        assert conflict_id.startswith("conflict_Trip_t1_")


class TestLastWriteWins:
    """Test the last-write-wins strategy."""

    def test_newer_remote_wins(self):
        store = InMemoryStore()
        result = run_async(make_engine(store).resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.LAST_WRITE_WINS, "phone", "u1"
        ))
        assert result.resolved_entity["title"] == "B"
        assert result.metadata.winner == Winner.REMOTE
        assert result.metadata.strategy == "lastWriteWins"

    def test_newer_local_wins(self):
        remote = {**REMOTE, "updated_at": T0 - timedelta(seconds=60)}
        result = run_async(make_engine(InMemoryStore()).resolve_conflict(
            EntityType.MEMORY, LOCAL, remote, ConflictStrategy.LAST_WRITE_WINS
        ))
        assert result.resolved_entity["title"] == "A"
        assert result.metadata.winner == Winner.LOCAL

    def test_tie_keeps_local(self):
        remote = {**REMOTE, "updated_at": T0}
        result = run_async(make_engine(InMemoryStore()).resolve_conflict(
            EntityType.MEMORY, LOCAL, remote, "lastWriteWins"
        ))
        assert result.metadata.winner == Winner.LOCAL

    def test_winner_timestamp_is_never_older_than_either_side(self):
        result = run_async(make_engine(InMemoryStore()).resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.LAST_WRITE_WINS
        ))
        winner_ts = result.resolved_entity["updated_at"]
        assert winner_ts >= LOCAL["updated_at"]
        assert winner_ts >= REMOTE["updated_at"]

    def test_log_entry_is_resolved_with_snapshots(self):
        store = InMemoryStore()
        result = run_async(make_engine(store).resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.LAST_WRITE_WINS, "phone", "u1"
        ))
        entry = store.db.conflicts[result.conflict_id]
        assert entry.status == ConflictStatus.RESOLVED
        assert entry.resolved_at is not None
        assert entry.device_id == "phone"
        assert entry.user_id == "u1"
        assert json.loads(entry.local_version)["title"] == "A"
        assert json.loads(entry.remote_version)["title"] == "B"
        assert entry.resolution["winner"] == "remote"


class TestFieldLevel:
    """Test the field-level merge strategy."""

    def test_newer_remote_overrides_differing_fields(self):
        result = run_async(make_engine(InMemoryStore()).resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.FIELD_LEVEL
        ))
        assert result.resolved_entity["title"] == "B"
        assert result.resolved_entity["text"] == "same"
        assert result.metadata.changed_fields == ["title"]
        assert "updated_at" not in result.metadata.changed_fields

    def test_older_remote_changes_nothing(self):
        remote = {**REMOTE, "updated_at": T0 - timedelta(seconds=60)}
        result = run_async(make_engine(InMemoryStore()).resolve_conflict(
            EntityType.MEMORY, LOCAL, remote, ConflictStrategy.FIELD_LEVEL
        ))
        assert result.metadata.changed_fields == []
        assert result.resolved_entity["title"] == "A"

    def test_every_field_comes_from_one_side(self):
        remote = {**REMOTE, "location_name": "Porto"}
        result = run_async(make_engine(InMemoryStore()).resolve_conflict(
            EntityType.MEMORY, LOCAL, remote, ConflictStrategy.FIELD_LEVEL
        ))
        for field, value in result.resolved_entity.items():
            if field == "updated_at":
                continue
            assert value in (LOCAL.get(field), remote.get(field))

    def test_merge_keeps_id_and_creation_time(self):
        remote = {**REMOTE, "id": "other", "created_at": T0}
        result = run_async(make_engine(InMemoryStore()).resolve_conflict(
            EntityType.MEMORY, LOCAL, remote, ConflictStrategy.FIELD_LEVEL
        ))
        assert result.resolved_entity["id"] == "m1"
        assert result.resolved_entity["created_at"] == LOCAL["created_at"]


class TestDevicePriority:
    """Test the device-priority strategy."""

    def register(self, store, name, priority, user_id="u1"):
        registry = DeviceRegistry(store.devices)
        run_async(registry.register_device(
            DeviceCreate(name=name, type=DeviceType.IOS, priority=priority), user_id
        ))

    def test_high_priority_device_keeps_local(self):
        store = InMemoryStore()
        self.register(store, "tablet", 8)
        result = run_async(make_engine(store).resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.DEVICE_PRIORITY, "tablet", "u1"
        ))
        assert result.resolved_entity["title"] == "A"
        assert result.metadata.winner == Winner.LOCAL
        assert result.metadata.device_priority == 8

    def test_low_priority_device_takes_remote(self):
        store = InMemoryStore()
        self.register(store, "phone", 5)
        result = run_async(make_engine(store).resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.DEVICE_PRIORITY, "phone", "u1"
        ))
        assert result.metadata.winner == Winner.REMOTE

    def test_unknown_device_has_priority_zero(self):
        result = run_async(make_engine(InMemoryStore()).resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.DEVICE_PRIORITY, "ghost", "u1"
        ))
        assert result.metadata.device_priority == 0
        assert result.metadata.winner == Winner.REMOTE


class TestUserChoice:
    """Test deferring a conflict to the user."""

    def test_defaults_to_remote_and_waits(self):
        store = InMemoryStore()
        result = run_async(make_engine(store).resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.USER_CHOICE, "phone", "u1"
        ))
        assert result.resolved_entity["title"] == "B"
        assert result.metadata.status == "pending"
        assert result.metadata.note.startswith("Awaiting user decision")
        entry = store.db.conflicts[result.conflict_id]
        assert entry.status == ConflictStatus.PENDING_USER_CHOICE
        assert entry.resolved_at is None

    def test_resolve_user_choice_returns_chosen_snapshot(self):
        store = InMemoryStore()
        engine = make_engine(store)
        result = run_async(engine.resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.USER_CHOICE, "phone", "u1"
        ))
        entry, chosen = run_async(engine.resolve_user_choice(result.conflict_id, Winner.LOCAL, "u1"))
        assert entry.status == ConflictStatus.RESOLVED
        assert entry.resolution["strategy"] == "userChoice"
        assert entry.resolved_at is not None
        assert entry.metadata["user_choice"] == "local"
        assert "local" in entry.metadata and "remote" in entry.metadata
        assert chosen["title"] == "A"
        assert chosen["updated_at"] == T0

    def test_resolve_twice_is_rejected(self):
        store = InMemoryStore()
        engine = make_engine(store)
        result = run_async(engine.resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.USER_CHOICE, "phone", "u1"
        ))
        run_async(engine.resolve_user_choice(result.conflict_id, Winner.REMOTE, "u1"))
        with pytest.raises(InvalidOperationError):
            run_async(engine.resolve_user_choice(result.conflict_id, Winner.LOCAL, "u1"))

    def test_other_user_cannot_resolve(self):
        store = InMemoryStore()
        engine = make_engine(store)
        result = run_async(engine.resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.USER_CHOICE, "phone", "u1"
        ))
        with pytest.raises(AccessDeniedError):
            run_async(engine.resolve_user_choice(result.conflict_id, Winner.LOCAL, "u2"))

    def test_unknown_conflict(self):
        with pytest.raises(EntityNotFoundError):
            run_async(make_engine(InMemoryStore()).resolve_user_choice("nope", Winner.LOCAL))


class TestFailures:
    """Test failure handling and metrics."""

    def test_unknown_strategy_leaves_pending_entry(self):
        store = InMemoryStore()
        with pytest.raises(UnknownStrategyError):
            run_async(make_engine(store).resolve_conflict(EntityType.MEMORY, LOCAL, REMOTE, "coinFlip"))
        [entry] = store.conflict_log.entries
        assert entry.status == ConflictStatus.PENDING
        assert entry.strategy == "coinFlip"
        assert "coinFlip" in entry.metadata["error"]

    def test_metrics_count_resolved_and_pending(self):
        store = InMemoryStore()
        engine = make_engine(store)
        run_async(engine.resolve_conflict(EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.LAST_WRITE_WINS))
        run_async(engine.resolve_conflict(EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.USER_CHOICE))
        metrics = run_async(engine.get_metrics("1h"))
        assert metrics.total_conflicts == 2
        assert metrics.resolved_conflicts == 1
        assert metrics.pending_conflicts == 1
        assert metrics.resolution_rate == 0.5
        assert metrics.timeframe == "1h"

    def test_metrics_with_no_conflicts(self):
        metrics = run_async(make_engine(InMemoryStore()).get_metrics())
        assert metrics.total_conflicts == 0
        assert metrics.resolution_rate == 0.0

    def test_metrics_for_one_user(self):
        store = InMemoryStore()
        engine = make_engine(store)
        run_async(engine.resolve_conflict(EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.LAST_WRITE_WINS, "phone", "u1"))
        run_async(engine.resolve_conflict(EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.USER_CHOICE, "tablet", "u2"))
        metrics = run_async(engine.get_metrics("1h", user_id="u2"))
        assert metrics.total_conflicts == 1
        assert metrics.resolved_conflicts == 0
        assert metrics.pending_conflicts == 1


class TestStagedResolution:
    """Test logging, resolving and failing a conflict as separate steps."""

    def test_outcome_written_through_the_given_log(self):
        store = InMemoryStore()
        engine = make_engine(store)

        async def resolve_and_roll_back():
            conflict_id = await engine.log_conflict(
                EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.LAST_WRITE_WINS, "phone", "u1"
            )
            with pytest.raises(RuntimeError):
                async with store.transaction() as tx:
                    await engine.apply_strategy(
                        conflict_id, LOCAL, REMOTE, ConflictStrategy.LAST_WRITE_WINS,
                        conflict_log=tx.transactional_conflict_log,
                    )
                    assert store.db.conflicts[conflict_id].status == ConflictStatus.RESOLVED
                    raise RuntimeError("save failed")
            return conflict_id

        conflict_id = run_async(resolve_and_roll_back())
        entry = store.db.conflicts[conflict_id]
        assert entry.status == ConflictStatus.PENDING
        assert entry.resolved_at is None

    def test_record_failure_keeps_entry_pending(self):
        store = InMemoryStore()
        engine = make_engine(store)
        conflict_id = run_async(engine.log_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.FIELD_LEVEL, "phone", "u1"
        ))
        run_async(engine.record_failure(conflict_id, RuntimeError("disk full")))
        entry = store.db.conflicts[conflict_id]
        assert entry.status == ConflictStatus.PENDING
        assert entry.metadata == {"error": "disk full"}

    def test_load_user_choice_writes_nothing(self):
        store = InMemoryStore()
        engine = make_engine(store)
        result = run_async(engine.resolve_conflict(
            EntityType.MEMORY, LOCAL, REMOTE, ConflictStrategy.USER_CHOICE, "phone", "u1"
        ))
        entry, chosen = run_async(engine.load_user_choice(result.conflict_id, Winner.REMOTE, "u1"))
        assert chosen["title"] == "B"
        assert store.db.conflicts[result.conflict_id].status == ConflictStatus.PENDING_USER_CHOICE
