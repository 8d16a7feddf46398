"""
Applying a single sync operation to the store.

Handles trip-role checks, creator ownership of user-scoped entities,
tombstones for every delete and the trip delete cascade.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from ..db.models import (
    ROLE_LEVELS,
    EntityDefinition,
    EntityScope,
    EntityType,
    OperationType,
    SyncOperation,
    TripRole,
    get_entity_definition,
)
from ..db.repository import EntityRepository, EntityStore
from .errors import AccessDeniedError, EntityNotFoundError, InvalidOperationError

logger = logging.getLogger(__name__)

# Column that records who created an entity, per type
_CREATOR_COLUMNS = {
    EntityType.MEMORY: "creator_id",
    EntityType.MEDIA_ITEM: "uploader_id",
    EntityType.TAG: "creator_id",
    EntityType.TAG_CATEGORY: "creator_id",
    EntityType.BUCKET_LIST_ITEM: "creator_id",
    EntityType.GPX_TRACK: "creator_id",
}


def parse_payload(definition: EntityDefinition, data: dict[str, Any]) -> dict[str, Any]:
    """Validate an operation payload into typed snake_case fields."""
    try:
        return definition.parse(data)
    except ValidationError as e:
        raise InvalidOperationError(
            f"Invalid {definition.entity_type.value} data: {e.error_count()} validation error(s): "
            + "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        )


async def find_existing(repo: EntityRepository, entity_id: str) -> Optional[dict[str, Any]]:
    """Look up by server id first, then by id."""
    entity = await repo.find_one(server_id=entity_id)
    if entity is None:
        entity = await repo.get_by_id(entity_id)
    return entity


class OperationApplier:
    """Applies validated operations on behalf of one caller."""

    def __init__(self, user_id: str):
        self.user_id = user_id

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------

    async def trip_id_for(
        self,
        store: EntityStore,
        definition: EntityDefinition,
        entity: dict[str, Any],
    ) -> Optional[str]:
        """The trip an entity belongs to, if any."""
        if definition.scope == EntityScope.SELF:
            return entity.get("id")
        if definition.scope == EntityScope.TRIP:
            return entity.get("trip_id")
        if definition.scope == EntityScope.MEMORY:
            memory_id = entity.get("memory_id")
            if not memory_id:
                return None
            memory = await store.repository(EntityType.MEMORY).get_by_id(memory_id)
            return memory.get("trip_id") if memory else None
        return None

    async def require_role(self, store: EntityStore, trip_id: Optional[str], role: TripRole) -> None:
        if not trip_id:
            raise AccessDeniedError("Entity is not attached to a trip")
        current = await store.memberships.get_role(trip_id, self.user_id)
        if ROLE_LEVELS.get(current, 0) < ROLE_LEVELS[role]:
            raise AccessDeniedError(
                f"You do not have sufficient permissions for trip {trip_id} ({role.value} required)"
            )

    async def authorize(
        self,
        store: EntityStore,
        definition: EntityDefinition,
        entity: dict[str, Any],
        role: TripRole = TripRole.EDITOR,
    ) -> None:
        """Raise AccessDeniedError unless the caller may act on ``entity`` with ``role``."""
        if definition.scope == EntityScope.GLOBAL:
            return
        if definition.scope == EntityScope.USER:
            if entity.get("creator_id") != self.user_id:
                raise AccessDeniedError(
                    f"{definition.entity_type.value} {entity.get('id')} belongs to another user"
                )
            return
        trip_id = await self.trip_id_for(store, definition, entity)
        await self.require_role(store, trip_id, role)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def apply(self, store: EntityStore, operation: SyncOperation) -> dict[str, Any]:
        """Apply one operation and return the resulting entity in wire format."""
        definition = get_entity_definition(operation.entity_type)
        payload = parse_payload(definition, operation.data)
        repo = store.repository(definition.entity_type)
        op_type = operation.type or OperationType.UPSERT
        entity_id = operation.entity_id

        if op_type == OperationType.DELETE:
            deleted_id = await self.delete(store, definition, entity_id)
            return {"id": deleted_id, "deleted": True}

        existing = await find_existing(repo, entity_id) if entity_id else None

        if op_type == OperationType.UPDATE and existing is None:
            raise EntityNotFoundError(definition.entity_type.value, entity_id)

        if existing is not None:
            # CREATE of a known id is a replay of the same client write
            saved = await self.update(store, definition, existing, payload)
        else:
            saved = await self.create(store, definition, payload)
        return definition.serialize(saved)

    async def create(
        self,
        store: EntityStore,
        definition: EntityDefinition,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        data = dict(payload)
        creator_column = _CREATOR_COLUMNS.get(definition.entity_type)
        if creator_column and not data.get(creator_column):
            data[creator_column] = self.user_id

        if definition.entity_type != EntityType.TRIP:
            await self.authorize(store, definition, data, TripRole.EDITOR)

        async with store.transaction() as tx:
            created = await tx.repository(definition.entity_type).create(data)
            if definition.entity_type == EntityType.TRIP:
                await tx.memberships.add(created["id"], self.user_id, TripRole.OWNER)

        logger.debug(f"Created {definition.entity_type.value} {created['id']}")
        return created

    async def update(
        self,
        store: EntityStore,
        definition: EntityDefinition,
        existing: dict[str, Any],
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        await self.authorize(store, definition, existing, TripRole.EDITOR)

        changes = {k: v for k, v in payload.items() if k not in ("id", "created_at")}
        merged = {**existing, **changes, "id": existing["id"]}

        # Moving an entity requires rights on the destination too
        if definition.scope in (EntityScope.TRIP, EntityScope.MEMORY, EntityScope.USER):
            await self.authorize(store, definition, merged, TripRole.EDITOR)

        return await self.save(store, definition, merged)

    async def save(
        self,
        store: EntityStore,
        definition: EntityDefinition,
        entity: dict[str, Any],
    ) -> dict[str, Any]:
        """Persist a full entity, stamping ``updated_at`` with the server time."""
        entity = {**entity, "updated_at": datetime.now(timezone.utc)}
        return await store.repository(definition.entity_type).save(entity)

    async def delete(
        self,
        store: EntityStore,
        definition: EntityDefinition,
        entity_id: Optional[str],
    ) -> str:
        """Delete an entity (and a trip's children), writing a tombstone for each."""
        repo = store.repository(definition.entity_type)
        existing = await find_existing(repo, entity_id) if entity_id else None
        if existing is None:
            raise EntityNotFoundError(definition.entity_type.value, entity_id)

        required = TripRole.OWNER if definition.entity_type == EntityType.TRIP else TripRole.EDITOR
        await self.authorize(store, definition, existing, required)
        trip_id = await self.trip_id_for(store, definition, existing)

        async with store.transaction() as tx:
            if definition.entity_type == EntityType.TRIP:
                await self._delete_trip_children(tx, existing["id"])
            await self._delete_with_tombstone(tx, definition, existing, trip_id)

        logger.info(f"Deleted {definition.entity_type.value} {existing['id']}")
        return existing["id"]

    async def _delete_trip_children(self, tx: EntityStore, trip_id: str) -> None:
        memories = await tx.repository(EntityType.MEMORY).find(trip_id=trip_id)
        media_definition = get_entity_definition(EntityType.MEDIA_ITEM)
        for memory in memories:
            media_items = await tx.repository(EntityType.MEDIA_ITEM).find(memory_id=memory["id"])
            for media_item in media_items:
                await self._delete_with_tombstone(tx, media_definition, media_item, trip_id)
            await self._delete_with_tombstone(
                tx, get_entity_definition(EntityType.MEMORY), memory, trip_id
            )

        gpx_definition = get_entity_definition(EntityType.GPX_TRACK)
        for track in await tx.repository(EntityType.GPX_TRACK).find(trip_id=trip_id):
            await self._delete_with_tombstone(tx, gpx_definition, track, trip_id)

    async def _delete_with_tombstone(
        self,
        tx: EntityStore,
        definition: EntityDefinition,
        entity: dict[str, Any],
        trip_id: Optional[str],
    ) -> None:
        affected = await tx.repository(definition.entity_type).delete(entity["id"])
        if affected == 0:
            raise EntityNotFoundError(definition.entity_type.value, entity["id"])

        owner_id = entity.get("creator_id") if definition.scope == EntityScope.USER else None
        if definition.scope == EntityScope.GLOBAL:
            trip_id = None
        await tx.deletion_log.record(definition.entity_type, entity["id"], trip_id=trip_id, owner_id=owner_id)
