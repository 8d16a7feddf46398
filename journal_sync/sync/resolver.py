"""
Conflict resolution engine.

Given the stored (local) and incoming (remote) versions of one entity and a
strategy, produces the resolved entity plus metadata explaining the choice.
Every conflict writes exactly one conflict log entry, created ``pending``
before the strategy runs and updated once it finishes. Callers that save the
resolved entity pass a transaction-bound log to ``apply_strategy`` so the
final status commits with the save.
"""

import json
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from ..db.models import (
    ConflictLogEntry,
    ConflictMetrics,
    ConflictResolutionResult,
    ConflictStatus,
    ConflictStrategy,
    DevicePriorityMetadata,
    EntityType,
    FieldLevelMetadata,
    LastWriteWinsMetadata,
    UserChoiceMetadata,
    Winner,
    get_entity_definition,
)
from ..db.repository import ConflictLogRepository
from .detector import effective_timestamp
from .devices import DeviceRegistry
from .errors import AccessDeniedError, EntityNotFoundError, InvalidOperationError, UnknownStrategyError

logger = logging.getLogger(__name__)

# Fields a field-level merge never takes from the remote side
MERGE_EXCLUDED_FIELDS = frozenset({"id", "created_at", "updated_at"})

_TIMEFRAME_PATTERN = re.compile(r"^(\d+)([hdw])$")
_TIMEFRAME_UNITS = {"h": 1, "d": 24, "w": 24 * 7}


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def serialize_snapshot(entity: dict[str, Any]) -> str:
    return json.dumps(entity, default=_json_default, indent=2, sort_keys=True)


def parse_timeframe(timeframe: str) -> timedelta:
    """``"12h"``, ``"7d"``, ``"2w"``; anything else means 24 hours."""
    match = _TIMEFRAME_PATTERN.match(timeframe or "")
    if not match:
        return timedelta(hours=24)
    return timedelta(hours=int(match.group(1)) * _TIMEFRAME_UNITS[match.group(2)])


def _strategy_tag(strategy: Union[ConflictStrategy, str]) -> str:
    return strategy.value if isinstance(strategy, ConflictStrategy) else str(strategy)


class ConflictResolutionEngine:
    """Strategy dispatch plus conflict audit logging."""

    # Shared across instances so ids stay distinct within the process
    _last_issued_millis = 0

    def __init__(
        self,
        conflict_log: ConflictLogRepository,
        devices: DeviceRegistry,
        priority_threshold: int = 5,
    ):
        self.conflict_log = conflict_log
        self.devices = devices
        self.priority_threshold = priority_threshold

    @classmethod
    def _next_millis(cls) -> int:
        millis = int(time.time() * 1000)
        if millis <= cls._last_issued_millis:
            millis = cls._last_issued_millis + 1
        cls._last_issued_millis = millis
        return millis

    def generate_conflict_id(self, entity_type: str, entity_id: str) -> str:
        return f"conflict_{entity_type}_{entity_id}_{self._next_millis()}"

    async def resolve_conflict(
        self,
        entity_type: Union[EntityType, str],
        local: dict[str, Any],
        remote: dict[str, Any],
        strategy: Union[ConflictStrategy, str],
        device_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ConflictResolutionResult:
        """
        Resolve one conflict.

        On failure the log entry stays ``pending`` with the error recorded in
        its metadata and the exception propagates to the caller.
        """
        conflict_id = await self.log_conflict(entity_type, local, remote, strategy, device_id, user_id)
        try:
            return await self.apply_strategy(conflict_id, local, remote, strategy, device_id, user_id)
        except Exception as e:
            await self.record_failure(conflict_id, e)
            raise

    async def log_conflict(
        self,
        entity_type: Union[EntityType, str],
        local: dict[str, Any],
        remote: dict[str, Any],
        strategy: Union[ConflictStrategy, str],
        device_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """Write the ``pending`` log entry for a new conflict and return its id."""
        type_name = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)
        strategy_tag = _strategy_tag(strategy)
        entity_id = str(local.get("id") or remote.get("id"))
        conflict_id = self.generate_conflict_id(type_name, entity_id)

        logger.info(f"Resolving conflict for {type_name}:{entity_id} with strategy: {strategy_tag}")

        await self.conflict_log.create(
            ConflictLogEntry(
                id=conflict_id,
                entity_type=type_name,
                entity_id=entity_id,
                device_id=device_id or "unknown",
                user_id=user_id,
                strategy=strategy_tag,
                local_version=serialize_snapshot(local),
                remote_version=serialize_snapshot(remote),
                timestamp=datetime.now(timezone.utc),
                status=ConflictStatus.PENDING,
            )
        )
        return conflict_id

    async def apply_strategy(
        self,
        conflict_id: str,
        local: dict[str, Any],
        remote: dict[str, Any],
        strategy: Union[ConflictStrategy, str],
        device_id: Optional[str] = None,
        user_id: Optional[str] = None,
        conflict_log: Optional[ConflictLogRepository] = None,
    ) -> ConflictResolutionResult:
        """
        Run the strategy for a logged conflict and write its outcome.

        ``conflict_log`` lets the caller bind the status update to the
        transaction that saves the resolved entity, so both commit or neither
        does.
        """
        conflict_log = conflict_log or self.conflict_log
        strategy_tag = _strategy_tag(strategy)
        try:
            resolved_strategy = ConflictStrategy(strategy_tag)
        except ValueError:
            raise UnknownStrategyError(strategy_tag)

        if resolved_strategy == ConflictStrategy.LAST_WRITE_WINS:
            resolved, metadata = self._resolve_last_write_wins(local, remote)
        elif resolved_strategy == ConflictStrategy.FIELD_LEVEL:
            resolved, metadata = self._resolve_field_level(local, remote)
        elif resolved_strategy == ConflictStrategy.DEVICE_PRIORITY:
            resolved, metadata = await self._resolve_device_priority(
                local, remote, device_id or "unknown", user_id
            )
        else:
            resolved, metadata = self._resolve_user_choice(local, remote)

        if resolved_strategy == ConflictStrategy.USER_CHOICE:
            await conflict_log.update_status(
                conflict_id,
                ConflictStatus.PENDING_USER_CHOICE,
                resolution=metadata.model_dump(mode="json"),
                metadata={"local": serialize_snapshot(local), "remote": serialize_snapshot(remote)},
            )
            logger.info(f"Conflict {conflict_id} awaits a user decision")
        else:
            await conflict_log.update_status(
                conflict_id,
                ConflictStatus.RESOLVED,
                resolution=metadata.model_dump(mode="json"),
                resolved_at=datetime.now(timezone.utc),
            )
            logger.info(f"Conflict resolved: {conflict_id} - Strategy: {strategy_tag}")

        return ConflictResolutionResult(
            resolved_entity=resolved,
            conflict_id=conflict_id,
            metadata=metadata,
            strategy=resolved_strategy,
        )

    async def record_failure(self, conflict_id: str, error: Exception) -> None:
        """Leave a conflict ``pending`` with the error that stopped its resolution."""
        await self.conflict_log.update_status(
            conflict_id,
            ConflictStatus.PENDING,
            metadata={"error": str(error) or error.__class__.__name__},
        )
        logger.error(f"Conflict resolution failed: {conflict_id}: {error}")

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _resolve_last_write_wins(self, local, remote):
        local_ts = effective_timestamp(local)
        remote_ts = effective_timestamp(remote)
        # Ties keep the stored version
        winner = Winner.REMOTE if remote_ts > local_ts else Winner.LOCAL
        metadata = LastWriteWinsMetadata(
            winner=winner,
            local_timestamp=local_ts,
            remote_timestamp=remote_ts,
            details=f"{winner.value.capitalize()} version newer "
                    f"({remote_ts if winner == Winner.REMOTE else local_ts})",
        )
        logger.debug(f"Last-write-wins: {winner.value} version selected")
        return (remote if winner == Winner.REMOTE else local), metadata

    def _resolve_field_level(self, local, remote):
        merged = dict(local)
        changed_fields = []
        remote_is_newer = effective_timestamp(remote) > effective_timestamp(local)

        for field, remote_value in remote.items():
            if field in MERGE_EXCLUDED_FIELDS:
                continue
            if local.get(field) != remote_value and remote_is_newer:
                merged[field] = remote_value
                changed_fields.append(field)

        merged["updated_at"] = datetime.now(timezone.utc)
        metadata = FieldLevelMetadata(
            changed_fields=changed_fields,
            details=f"Field-level merge: {', '.join(changed_fields)}",
        )
        logger.debug(f"Field-level merge completed: {len(changed_fields)} fields changed")
        return merged, metadata

    async def _resolve_device_priority(self, local, remote, device_id, user_id):
        device = await self.devices.get_device(device_id, user_id)
        priority = device.priority if device else 0
        # A high-priority acting device keeps the stored version
        winner = Winner.LOCAL if priority > self.priority_threshold else Winner.REMOTE
        metadata = DevicePriorityMetadata(
            winner=winner,
            device_priority=priority,
            details=f"Device priority: {priority} ({device.name if device else 'unknown'})",
        )
        logger.debug(f"Device-priority: {winner.value} wins with priority {priority}")
        return (local if winner == Winner.LOCAL else remote), metadata

    def _resolve_user_choice(self, local, remote):
        metadata = UserChoiceMetadata(
            note="Awaiting user decision - defaulted to remote",
        )
        return remote, metadata

    # ------------------------------------------------------------------
    # Deferred decisions and reporting
    # ------------------------------------------------------------------

    async def load_user_choice(
        self,
        conflict_id: str,
        choice: Winner,
        user_id: Optional[str] = None,
    ) -> tuple[ConflictLogEntry, dict[str, Any]]:
        """
        Look up a conflict deferred with the userChoice strategy.

        Returns the log entry and the chosen snapshot (snake_case, typed) for
        the caller to persist. Nothing is written.
        """
        entry = await self.conflict_log.get_by_id(conflict_id)
        if entry is None:
            raise EntityNotFoundError("Conflict", conflict_id)
        if user_id and entry.user_id and entry.user_id != user_id:
            raise AccessDeniedError(f"Conflict {conflict_id} belongs to another user")
        if entry.status != ConflictStatus.PENDING_USER_CHOICE:
            raise InvalidOperationError(
                f"Conflict {conflict_id} is not awaiting a user decision (status: {entry.status.value})"
            )

        snapshot = entry.local_version if choice == Winner.LOCAL else entry.remote_version
        chosen = get_entity_definition(entry.entity_type).parse(json.loads(snapshot))
        return entry, chosen

    async def complete_user_choice(
        self,
        entry: ConflictLogEntry,
        choice: Winner,
        conflict_log: Optional[ConflictLogRepository] = None,
    ) -> ConflictLogEntry:
        """
        Mark a deferred conflict resolved.

        The userChoice resolution recorded at detection time is kept; the
        decision goes into the entry's metadata next to both snapshots.
        """
        conflict_log = conflict_log or self.conflict_log
        updated = await conflict_log.update_status(
            entry.id,
            ConflictStatus.RESOLVED,
            resolved_at=datetime.now(timezone.utc),
            metadata={**(entry.metadata or {}), "user_choice": choice.value},
        )
        logger.info(f"Conflict {entry.id} resolved by user choice: {choice.value}")
        return updated or entry

    async def resolve_user_choice(
        self,
        conflict_id: str,
        choice: Winner,
        user_id: Optional[str] = None,
    ) -> tuple[ConflictLogEntry, dict[str, Any]]:
        """Complete a deferred conflict without persisting the chosen snapshot."""
        entry, chosen = await self.load_user_choice(conflict_id, choice, user_id)
        return await self.complete_user_choice(entry, choice), chosen

    async def get_metrics(self, timeframe: str = "24h", user_id: Optional[str] = None) -> ConflictMetrics:
        """Conflict counts over ``timeframe``, for one user when ``user_id`` is given."""
        since = datetime.now(timezone.utc) - parse_timeframe(timeframe)
        counts = await self.conflict_log.count_since(since, user_id=user_id)
        total = counts["total"]
        return ConflictMetrics(
            total_conflicts=total,
            resolved_conflicts=counts["resolved"],
            pending_conflicts=counts["pending"],
            resolution_rate=counts["resolved"] / total if total else 0.0,
            timeframe=timeframe,
        )
