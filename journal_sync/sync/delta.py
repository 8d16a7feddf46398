"""
Delta sync: everything a caller may see that changed after a watermark,
plus the tombstones of what was deleted since.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from ..db.models import ENTITY_REGISTRY, DeletedIds, EntityType, SyncResponse
from ..db.repository import EntityStore
from .detector import EPOCH, to_utc
from .monitoring import SyncMetric, SyncMonitor

logger = logging.getLogger(__name__)

# Response field for each entity type
_RESPONSE_FIELDS = {
    EntityType.TRIP: "trips",
    EntityType.MEMORY: "memories",
    EntityType.MEDIA_ITEM: "media_items",
    EntityType.GPX_TRACK: "gpx_tracks",
    EntityType.TAG: "tags",
    EntityType.TAG_CATEGORY: "tag_categories",
    EntityType.BUCKET_LIST_ITEM: "bucket_list_items",
}


class DeltaSyncReconciler:
    """Read-only reconciliation of changes and deletions since a watermark."""

    def __init__(self, store: EntityStore, monitor: Optional[SyncMonitor] = None):
        self.store = store
        self.monitor = monitor

    async def sync(self, last_synced_at: Optional[datetime], user_id: str) -> SyncResponse:
        """
        Collect changes after ``last_synced_at`` (everything when None).

        ``server_timestamp`` is taken before any query so writes committing
        during the pass show up again next time instead of being skipped.
        Clients may see an entity twice; sync is idempotent by id.
        """
        server_timestamp = datetime.now(timezone.utc)
        since = to_utc(last_synced_at) or EPOCH

        trip_ids = await self.store.memberships.get_accessible_trip_ids(user_id)
        logger.info(f"Delta sync for user {user_id} since {since.isoformat()} across {len(trip_ids)} trip(s)")

        collections: dict[str, list[dict]] = {}
        total = 0
        for entity_type, definition in ENTITY_REGISTRY.items():
            rows = await self.store.repository(entity_type).find_changed_since(
                since, trip_ids=trip_ids, user_id=user_id
            )
            collections[_RESPONSE_FIELDS[entity_type]] = [definition.serialize(row) for row in rows]
            total += len(rows)

        tombstones = await self.store.deletion_log.find_since(since, trip_ids, user_id)

        if self.monitor is not None:
            self.monitor.record_metric(
                _delta_metric(user_id, total + len(tombstones), server_timestamp)
            )

        return SyncResponse(
            **collections,
            deleted=DeletedIds.from_tombstones(tombstones),
            server_timestamp=server_timestamp,
        )


def _delta_metric(user_id: str, entity_count: int, started_at: datetime):
    return SyncMetric(
        operation="delta_sync",
        entity_type="mixed",
        duration_ms=(datetime.now(timezone.utc) - started_at).total_seconds() * 1000,
        entity_count=entity_count,
        user_id=user_id,
    )
