"""
Tests for conflict detection.

Run with: pytest tests/test_conflict_detector.py -v
"""

from datetime import datetime, timedelta, timezone

from journal_sync.db.models import ConflictType
from journal_sync.sync.detector import (
    EPOCH,
    ConflictDetector,
    checksum,
    effective_timestamp,
    to_utc,
)

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def memory(**overrides):
    data = {
        "id": "m1",
        "title": "Sunset",
        "text": "Beach walk",
        "created_at": T0 - timedelta(days=1),
        "updated_at": T0,
    }
    data.update(overrides)
    return data


class TestChecksum:
    """Test the order-independent entity checksum."""

    def test_key_order_does_not_matter(self):
        assert checksum({"a": 1, "b": "x"}) == checksum({"b": "x", "a": 1})

    def test_different_content_differs(self):
        assert checksum({"a": 1}) != checksum({"a": 2})

    def test_is_hex_string(self):
        value = checksum({"title": "Sunset"}).lstrip("-")
        int(value, 16)

    def test_handles_datetimes(self):
        assert checksum({"at": T0}) == checksum({"at": T0})


class TestTimestamps:
    """Test timestamp coercion helpers."""

    def test_naive_datetime_is_utc(self):
        assert to_utc(datetime(2024, 1, 1, 10)) == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)

    def test_iso_string_is_parsed(self):
        assert to_utc("2024-06-01T12:00:00Z") == T0

    def test_unparseable_string_is_none(self):
        assert to_utc("not a date") is None

    def test_effective_timestamp_prefers_updated_at(self):
        assert effective_timestamp({"created_at": T0 - timedelta(hours=1), "updated_at": T0}) == T0

    def test_effective_timestamp_falls_back_to_created_at(self):
        assert effective_timestamp({"created_at": T0}) == T0

    def test_effective_timestamp_defaults_to_epoch(self):
        assert effective_timestamp({}) == EPOCH


class TestConflictDetector:
    """Test the detection heuristic."""

    def setup_method(self):
        self.detector = ConflictDetector(window_seconds=300)

    def test_identical_versions_never_conflict(self):
        entity = memory()
        result = self.detector.detect(entity, dict(entity))
        assert result.has_conflict is False
        assert result.conflict_type == ConflictType.NONE

    def test_close_timestamps_with_different_fields_conflict(self):
        local = memory()
        remote = memory(title="Sunrise", updated_at=T0 + timedelta(seconds=30))
        result = self.detector.detect(local, remote)
        assert result.has_conflict is True
        assert result.conflicted_fields == ["title"]
        assert result.conflict_type == ConflictType.TIMESTAMP
        assert result.local_checksum != result.remote_checksum

    def test_timestamps_outside_window_do_not_conflict(self):
        local = memory()
        remote = memory(title="Sunrise", updated_at=T0 + timedelta(minutes=6))
        assert self.detector.detect(local, remote).has_conflict is False

    def test_exactly_at_window_does_not_conflict(self):
        local = memory()
        remote = memory(title="Sunrise", updated_at=T0 + timedelta(seconds=300))
        assert self.detector.detect(local, remote).has_conflict is False

    def test_only_timestamp_difference_is_not_a_conflict(self):
        local = memory()
        remote = memory(updated_at=T0 + timedelta(seconds=10))
        result = self.detector.detect(local, remote)
        assert result.has_conflict is False
        assert result.conflicted_fields == []

    def test_fields_missing_on_one_side_are_ignored(self):
        local = memory()
        remote = {"id": "m1", "location_name": "Lisbon", "updated_at": T0 + timedelta(seconds=5)}
        assert self.detector.detect(local, remote).has_conflict is False

    def test_missing_timestamps_skip_detection(self):
        local = {"id": "m1", "title": "Sunset"}
        remote = memory(title="Sunrise")
        assert self.detector.detect(local, remote).has_conflict is False

    def test_many_changed_fields_are_structural(self):
        local = memory(a=1, b=1, c=1, d=1, e=1, f=1)
        remote = memory(a=2, b=2, c=2, d=2, e=2, f=2, updated_at=T0 + timedelta(seconds=1))
        result = self.detector.detect(local, remote)
        assert result.has_conflict is True
        assert result.conflict_type == ConflictType.STRUCTURAL

    def test_equal_instants_in_different_zones_match(self):
        plus_two = timezone(timedelta(hours=2))
        local = memory(timestamp=T0)
        remote = memory(timestamp=T0.astimezone(plus_two), updated_at=T0 + timedelta(seconds=5))
        assert self.detector.conflicted_fields(local, remote) == []

    def test_custom_window(self):
        detector = ConflictDetector(window_seconds=1)
        local = memory()
        remote = memory(title="Sunrise", updated_at=T0 + timedelta(seconds=2))
        assert detector.detect(local, remote).has_conflict is False
