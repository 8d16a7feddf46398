"""
Conflict detection between a stored entity and an incoming write.

This is a heuristic, not a logical clock: two versions conflict when their
timestamps are close together, they disagree on at least one shared field,
and their checksums differ. Concurrent edits further apart than the window
are not detected; near-simultaneous retries of different content are.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import TypeAdapter, ValidationError

from ..db.models import ConflictDetectionResult, ConflictType

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Identity and bookkeeping fields never count as conflicting content
IGNORED_FIELDS = frozenset({"id", "server_id", "created_at", "updated_at"})

STRUCTURAL_FIELD_COUNT = 5

_datetime_adapter = TypeAdapter(datetime)


def to_utc(value: Any) -> Optional[datetime]:
    """Coerce a datetime or ISO string to an aware UTC datetime (naive means UTC)."""
    if value is None or value == "":
        return None
    if not isinstance(value, datetime):
        try:
            value = _datetime_adapter.validate_python(value)
        except ValidationError:
            logger.warning(f"Ignoring unparseable timestamp: {value!r}")
            return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def has_timestamps(entity: dict[str, Any]) -> bool:
    return to_utc(entity.get("updated_at")) is not None or to_utc(entity.get("created_at")) is not None


def effective_timestamp(entity: dict[str, Any]) -> datetime:
    """``updated_at``, else ``created_at``, else the epoch."""
    return to_utc(entity.get("updated_at")) or to_utc(entity.get("created_at")) or EPOCH


def checksum(entity: dict[str, Any]) -> str:
    """Order-independent 32-bit rolling hash of an entity, as hex."""
    normalized = json.dumps(entity, sort_keys=True, default=str, separators=(",", ":"))
    h = 0
    for char in normalized:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(h, "x")


def _values_differ(local_value: Any, remote_value: Any) -> bool:
    if isinstance(local_value, datetime) or isinstance(remote_value, datetime):
        return to_utc(local_value) != to_utc(remote_value)
    return local_value != remote_value


class ConflictDetector:
    """Decides whether an incoming write conflicts with the stored version."""

    def __init__(self, window_seconds: int = 300):
        self.window = timedelta(seconds=window_seconds)

    def conflicted_fields(self, local: dict[str, Any], remote: dict[str, Any]) -> list[str]:
        """Fields present on both sides whose values differ."""
        return [
            field
            for field, remote_value in remote.items()
            if field not in IGNORED_FIELDS
            and field in local
            and _values_differ(local[field], remote_value)
        ]

    def detect(self, local: dict[str, Any], remote: dict[str, Any]) -> ConflictDetectionResult:
        # Without provenance on either side the incoming write is accepted
        if not has_timestamps(local) or not has_timestamps(remote):
            return ConflictDetectionResult(has_conflict=False)

        local_ts = effective_timestamp(local)
        remote_ts = effective_timestamp(remote)
        has_timestamp_conflict = abs(local_ts - remote_ts) < self.window

        fields = self.conflicted_fields(local, remote)
        local_checksum = checksum(local)
        remote_checksum = checksum(remote)

        has_conflict = has_timestamp_conflict and bool(fields) and local_checksum != remote_checksum

        conflict_type = ConflictType.NONE
        if has_conflict:
            if len(fields) > STRUCTURAL_FIELD_COUNT:
                conflict_type = ConflictType.STRUCTURAL
            elif has_timestamp_conflict:
                conflict_type = ConflictType.TIMESTAMP
            else:
                conflict_type = ConflictType.DATA

        return ConflictDetectionResult(
            has_conflict=has_conflict,
            conflicted_fields=fields,
            conflict_type=conflict_type,
            local_checksum=local_checksum,
            remote_checksum=remote_checksum,
        )
