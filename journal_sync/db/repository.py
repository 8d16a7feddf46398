"""
Repository layer for database operations.

Every repository takes the pool and, optionally, a connection that is
already inside a transaction. When a connection is bound, all statements run
on it; otherwise each call acquires its own connection from the pool.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Union
from uuid import uuid4

import asyncpg

from .models import (
    ConflictLogEntry,
    ConflictStatus,
    DeletionLog,
    DeviceInfo,
    DeviceType,
    EntityDefinition,
    EntityScope,
    EntityType,
    TripMembership,
    TripRole,
    get_entity_definition,
)

logger = logging.getLogger(__name__)


def _quote(column: str) -> str:
    # Some entity columns ("order", "timestamp") are SQL keywords
    return f'"{column}"'


def _affected_rows(status: str) -> int:
    """Parse the row count out of an asyncpg command status ("DELETE 3")."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _load_json(value: Any) -> Optional[dict]:
    if isinstance(value, str):
        return json.loads(value)
    return value


class _BaseRepository:
    """Shared connection handling."""

    def __init__(self, pool: asyncpg.Pool, conn: Optional[asyncpg.Connection] = None):
        self.pool = pool
        self.conn = conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        if self.conn is not None:
            yield self.conn
        else:
            async with self.pool.acquire() as conn:
                yield conn


# ============================================================================
# Entity Repository
# ============================================================================

class EntityRepository(_BaseRepository):
    """Generic CRUD for one syncable entity table, driven by its registry entry."""

    def __init__(
        self,
        definition: EntityDefinition,
        pool: asyncpg.Pool,
        conn: Optional[asyncpg.Connection] = None,
    ):
        super().__init__(pool, conn)
        self.definition = definition
        self.table = definition.table

    @property
    def entity_type(self) -> EntityType:
        return self.definition.entity_type

    def _check_columns(self, columns) -> None:
        unknown = set(columns) - set(self.definition.columns)
        if unknown:
            raise ValueError(f"Unknown {self.entity_type.value} columns: {sorted(unknown)}")

    def _where(self, where: dict[str, Any]) -> tuple[str, list[Any]]:
        self._check_columns(where)
        clauses = []
        values = []
        for column, value in where.items():
            if value is None:
                clauses.append(f"{_quote(column)} IS NULL")
                continue
            clauses.append(f"{_quote(column)} = ${len(values) + 1}")
            values.append(value)
        return (" AND ".join(clauses) or "TRUE"), values

    async def get_by_id(self, entity_id: str) -> Optional[dict[str, Any]]:
        """Get an entity by ID."""
        query = f"SELECT * FROM {self.table} WHERE id = $1"
        async with self._connection() as conn:
            row = await conn.fetchrow(query, entity_id)
            return dict(row) if row else None

    async def find_one(self, **where: Any) -> Optional[dict[str, Any]]:
        """Get the first entity matching all column equalities."""
        clause, values = self._where(where)
        query = f"SELECT * FROM {self.table} WHERE {clause} LIMIT 1"
        async with self._connection() as conn:
            row = await conn.fetchrow(query, *values)
            return dict(row) if row else None

    async def find(self, **where: Any) -> list[dict[str, Any]]:
        """Get all entities matching all column equalities."""
        clause, values = self._where(where)
        query = f"SELECT * FROM {self.table} WHERE {clause} ORDER BY created_at"
        async with self._connection() as conn:
            rows = await conn.fetch(query, *values)
            return [dict(row) for row in rows]

    async def find_by_ids(self, entity_ids: list[str]) -> list[dict[str, Any]]:
        """Get all entities whose id is in ``entity_ids``."""
        if not entity_ids:
            return []
        query = f"SELECT * FROM {self.table} WHERE id = ANY($1::text[])"
        async with self._connection() as conn:
            rows = await conn.fetch(query, list(entity_ids))
            return [dict(row) for row in rows]

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a new entity.

        The id is kept when the client supplied one (idempotency key),
        otherwise a UUID is generated. Timestamps default to now.
        """
        now = datetime.now(timezone.utc)
        row_data = dict(data)
        row_data["id"] = row_data.get("id") or str(uuid4())
        row_data["created_at"] = row_data.get("created_at") or now
        row_data["updated_at"] = row_data.get("updated_at") or now
        self._check_columns(row_data)

        columns = list(row_data)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        query = f"""
            INSERT INTO {self.table} ({", ".join(_quote(c) for c in columns)})
            VALUES ({placeholders})
            RETURNING *
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(query, *[row_data[c] for c in columns])
            return dict(row)

    async def save(self, entity: dict[str, Any]) -> dict[str, Any]:
        """Insert or update an entity by id, writing only the columns given."""
        if not entity.get("id"):
            return await self.create(entity)
        self._check_columns(entity)

        columns = list(entity)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        updates = [f"{_quote(c)} = EXCLUDED.{_quote(c)}" for c in columns if c != "id"]
        conflict_action = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
        query = f"""
            INSERT INTO {self.table} ({", ".join(_quote(c) for c in columns)})
            VALUES ({placeholders})
            ON CONFLICT (id) {conflict_action}
            RETURNING *
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(query, *[entity[c] for c in columns])
            if row is None:
                # DO NOTHING returns no row when the id already exists
                row = await conn.fetchrow(f"SELECT * FROM {self.table} WHERE id = $1", entity["id"])
            return dict(row)

    async def delete(self, entity_id: str) -> int:
        """Delete an entity. Returns the number of affected rows."""
        query = f"DELETE FROM {self.table} WHERE id = $1"
        async with self._connection() as conn:
            result = await conn.execute(query, entity_id)
            return _affected_rows(result)

    async def find_changed_since(
        self,
        since: datetime,
        trip_ids: Optional[list[str]] = None,
        user_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """
        Get entities updated after ``since`` that the caller may see.

        Trip-scoped types are restricted to ``trip_ids`` (media items through
        their memory), user-scoped types to ``user_id``, global types are
        unrestricted.
        """
        scope = self.definition.scope
        if scope in (EntityScope.SELF, EntityScope.TRIP, EntityScope.MEMORY) and not trip_ids:
            return []

        if scope == EntityScope.SELF:
            query = f"""
                SELECT * FROM {self.table}
                WHERE updated_at > $1 AND id = ANY($2::text[])
                ORDER BY updated_at
            """
            args = [since, list(trip_ids)]
        elif scope == EntityScope.TRIP:
            query = f"""
                SELECT * FROM {self.table}
                WHERE updated_at > $1 AND trip_id = ANY($2::text[])
                ORDER BY updated_at
            """
            args = [since, list(trip_ids)]
        elif scope == EntityScope.MEMORY:
            query = f"""
                SELECT t.* FROM {self.table} t
                JOIN memories m ON m.id = t.memory_id
                WHERE t.updated_at > $1 AND m.trip_id = ANY($2::text[])
                ORDER BY t.updated_at
            """
            args = [since, list(trip_ids)]
        elif scope == EntityScope.USER:
            if not user_id:
                return []
            query = f"""
                SELECT * FROM {self.table}
                WHERE updated_at > $1 AND creator_id = $2
                ORDER BY updated_at
            """
            args = [since, user_id]
        else:
            query = f"SELECT * FROM {self.table} WHERE updated_at > $1 ORDER BY updated_at"
            args = [since]

        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]


# ============================================================================
# Deletion Log Repository
# ============================================================================

class DeletionLogRepository(_BaseRepository):
    """Repository for deletion tombstones."""

    async def record(
        self,
        entity_type: EntityType,
        entity_id: str,
        trip_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> DeletionLog:
        """Write a tombstone for a deleted entity."""
        query = """
            INSERT INTO deletion_log (entity_id, entity_type, trip_id, owner_id, deleted_at)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                query,
                entity_id,
                entity_type.value,
                trip_id,
                owner_id,
                datetime.now(timezone.utc),
            )
            return self._row_to_tombstone(row)

    async def find_since(
        self,
        since: datetime,
        trip_ids: list[str],
        user_id: str,
    ) -> list[DeletionLog]:
        """Tombstones after ``since`` in the caller's trips, owned by them, or global."""
        query = """
            SELECT * FROM deletion_log
            WHERE deleted_at > $1
              AND (
                trip_id = ANY($2::text[])
                OR owner_id = $3
                OR (trip_id IS NULL AND owner_id IS NULL)
              )
            ORDER BY deleted_at
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, since, list(trip_ids), user_id)
            return [self._row_to_tombstone(row) for row in rows]

    def _row_to_tombstone(self, row: asyncpg.Record) -> DeletionLog:
        return DeletionLog(
            entity_id=row["entity_id"],
            entity_type=EntityType.parse(row["entity_type"]),
            trip_id=row["trip_id"],
            owner_id=row["owner_id"],
            deleted_at=row["deleted_at"],
        )


# ============================================================================
# Trip Membership Repository
# ============================================================================

class TripMembershipRepository(_BaseRepository):
    """Repository for trip membership roles."""

    async def get_role(self, trip_id: str, user_id: str) -> Optional[TripRole]:
        """Get the caller's role on a trip, or None if not a member."""
        query = "SELECT role FROM trip_memberships WHERE trip_id = $1 AND user_id = $2"
        async with self._connection() as conn:
            role = await conn.fetchval(query, trip_id, user_id)
            return TripRole(role) if role else None

    async def get_accessible_trip_ids(self, user_id: str) -> list[str]:
        """Trip ids the user is an accepted member of."""
        query = """
            SELECT trip_id FROM trip_memberships
            WHERE user_id = $1 AND role <> $2
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, user_id, TripRole.PENDING.value)
            return [row["trip_id"] for row in rows]

    async def add(self, trip_id: str, user_id: str, role: TripRole) -> TripMembership:
        """Add a member to a trip (or change their role)."""
        query = """
            INSERT INTO trip_memberships (id, trip_id, user_id, role)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (trip_id, user_id) DO UPDATE SET role = EXCLUDED.role
            RETURNING *
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(query, str(uuid4()), trip_id, user_id, role.value)
            return TripMembership(
                id=row["id"],
                trip_id=row["trip_id"],
                user_id=row["user_id"],
                role=TripRole(row["role"]),
            )


# ============================================================================
# Conflict Log Repository
# ============================================================================

class ConflictLogRepository(_BaseRepository):
    """Repository for the conflict audit trail. Entries are never deleted."""

    async def create(self, entry: ConflictLogEntry) -> ConflictLogEntry:
        """Append a conflict log entry."""
        query = """
            INSERT INTO conflict_logs (
                id, entity_type, entity_id, device_id, user_id, strategy,
                local_version, remote_version, timestamp, status,
                resolution, resolved_at, metadata
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            RETURNING *
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                query,
                entry.id,
                entry.entity_type,
                entry.entity_id,
                entry.device_id,
                entry.user_id,
                entry.strategy,
                entry.local_version,
                entry.remote_version,
                entry.timestamp,
                entry.status.value,
                json.dumps(entry.resolution) if entry.resolution is not None else None,
                entry.resolved_at,
                json.dumps(entry.metadata) if entry.metadata is not None else None,
            )
            return self._row_to_entry(row)

    async def update_status(
        self,
        conflict_id: str,
        status: ConflictStatus,
        resolution: Optional[dict[str, Any]] = None,
        resolved_at: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[ConflictLogEntry]:
        """Transition a conflict's status and attach its resolution."""
        query = """
            UPDATE conflict_logs
            SET status = $2,
                resolution = COALESCE($3::jsonb, resolution),
                resolved_at = COALESCE($4, resolved_at),
                metadata = COALESCE($5::jsonb, metadata)
            WHERE id = $1
            RETURNING *
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                query,
                conflict_id,
                status.value,
                json.dumps(resolution) if resolution is not None else None,
                resolved_at,
                json.dumps(metadata) if metadata is not None else None,
            )
            return self._row_to_entry(row) if row else None

    async def get_by_id(self, conflict_id: str) -> Optional[ConflictLogEntry]:
        """Get a conflict log entry by ID."""
        query = "SELECT * FROM conflict_logs WHERE id = $1"
        async with self._connection() as conn:
            row = await conn.fetchrow(query, conflict_id)
            return self._row_to_entry(row) if row else None

    async def list_for_user(
        self,
        user_id: str,
        statuses: Optional[list[ConflictStatus]] = None,
        limit: int = 100,
    ) -> list[ConflictLogEntry]:
        """List a user's conflicts, newest first, optionally filtered by status."""
        if statuses:
            query = """
                SELECT * FROM conflict_logs
                WHERE user_id = $1 AND status = ANY($2::text[])
                ORDER BY timestamp DESC
                LIMIT $3
            """
            args = [user_id, [s.value for s in statuses], limit]
        else:
            query = """
                SELECT * FROM conflict_logs
                WHERE user_id = $1
                ORDER BY timestamp DESC
                LIMIT $2
            """
            args = [user_id, limit]
        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)
            return [self._row_to_entry(row) for row in rows]

    async def count_since(self, since: datetime, user_id: Optional[str] = None) -> dict[str, int]:
        """Count total, resolved and still-open conflicts detected after ``since``."""
        query = """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE status = 'resolved') AS resolved,
                COUNT(*) FILTER (WHERE status IN ('pending', 'pending_user_choice')) AS pending
            FROM conflict_logs
            WHERE timestamp >= $1
              AND ($2::text IS NULL OR user_id = $2)
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(query, since, user_id)
            return {
                "total": row["total"] or 0,
                "resolved": row["resolved"] or 0,
                "pending": row["pending"] or 0,
            }

    def _row_to_entry(self, row: asyncpg.Record) -> ConflictLogEntry:
        """Convert database row to ConflictLogEntry model."""
        return ConflictLogEntry(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            device_id=row["device_id"],
            user_id=row["user_id"],
            strategy=row["strategy"],
            local_version=row["local_version"],
            remote_version=row["remote_version"],
            timestamp=row["timestamp"],
            status=ConflictStatus(row["status"]),
            resolution=_load_json(row["resolution"]),
            resolved_at=row["resolved_at"],
            metadata=_load_json(row["metadata"]),
        )


# ============================================================================
# Device Registry Repository
# ============================================================================

class DeviceRegistryRepository(_BaseRepository):
    """Repository for known client devices."""

    async def get(self, device_id: str, user_id: Optional[str] = None) -> Optional[DeviceInfo]:
        """Get a device by its external device id, optionally for one user."""
        if user_id:
            query = "SELECT * FROM device_registry WHERE device_id = $1 AND user_id = $2"
            args = [device_id, user_id]
        else:
            query = "SELECT * FROM device_registry WHERE device_id = $1 ORDER BY last_seen DESC LIMIT 1"
            args = [device_id]
        async with self._connection() as conn:
            row = await conn.fetchrow(query, *args)
            return self._row_to_device(row) if row else None

    async def upsert(
        self,
        device_id: str,
        name: str,
        device_type: DeviceType,
        priority: int,
        user_id: str,
    ) -> DeviceInfo:
        """Register a device, refreshing last_seen, type and priority if it exists."""
        query = """
            INSERT INTO device_registry (id, device_id, name, type, priority, last_seen, user_id)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (device_id, user_id) DO UPDATE SET
                name = EXCLUDED.name,
                type = EXCLUDED.type,
                priority = EXCLUDED.priority,
                last_seen = EXCLUDED.last_seen
            RETURNING *
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                query,
                str(uuid4()),
                device_id,
                name,
                device_type.value,
                priority,
                datetime.now(timezone.utc),
                user_id,
            )
            return self._row_to_device(row)

    async def update_priority(
        self,
        device_id: str,
        priority: int,
        user_id: Optional[str] = None,
    ) -> Optional[DeviceInfo]:
        """Change a device's priority weight."""
        if user_id:
            query = """
                UPDATE device_registry SET priority = $2
                WHERE device_id = $1 AND user_id = $3
                RETURNING *
            """
            args = [device_id, priority, user_id]
        else:
            query = "UPDATE device_registry SET priority = $2 WHERE device_id = $1 RETURNING *"
            args = [device_id, priority]
        async with self._connection() as conn:
            row = await conn.fetchrow(query, *args)
            return self._row_to_device(row) if row else None

    async def list_for_user(self, user_id: str) -> list[DeviceInfo]:
        """All devices of a user, highest priority first, then most recently seen."""
        query = """
            SELECT * FROM device_registry
            WHERE user_id = $1
            ORDER BY priority DESC, last_seen DESC
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, user_id)
            return [self._row_to_device(row) for row in rows]

    def _row_to_device(self, row: asyncpg.Record) -> DeviceInfo:
        return DeviceInfo(
            id=row["id"],
            device_id=row["device_id"],
            name=row["name"],
            type=DeviceType(row["type"]),
            priority=row["priority"],
            last_seen=row["last_seen"],
            user_id=row["user_id"],
        )


# ============================================================================
# Entity Store
# ============================================================================

class EntityStore:
    """
    Unit-of-work over all sync repositories.

    ``transaction()`` yields a store bound to one connection inside a
    transaction; using it again on that bound store opens a savepoint, so a
    nested failure rolls back only the nested block. ``conflict_log`` and
    ``devices`` always use the pool and are never rolled back with entity
    writes; ``transactional_conflict_log`` runs on the bound connection for
    status updates that must commit together with an entity save.
    """

    def __init__(self, pool: asyncpg.Pool, conn: Optional[asyncpg.Connection] = None):
        self.pool = pool
        self.conn = conn
        self.conflict_log = ConflictLogRepository(pool)
        self.devices = DeviceRegistryRepository(pool)

    def repository(self, entity_type: Union[EntityType, str]) -> EntityRepository:
        return EntityRepository(get_entity_definition(entity_type), self.pool, self.conn)

    @property
    def deletion_log(self) -> DeletionLogRepository:
        return DeletionLogRepository(self.pool, self.conn)

    @property
    def memberships(self) -> TripMembershipRepository:
        return TripMembershipRepository(self.pool, self.conn)

    @property
    def transactional_conflict_log(self) -> ConflictLogRepository:
        return ConflictLogRepository(self.pool, self.conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["EntityStore"]:
        if self.conn is not None:
            async with self.conn.transaction():
                yield self
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield EntityStore(self.pool, conn)
