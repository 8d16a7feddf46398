"""
Presigned URL issuance for media files and GPX tracks.

File bytes never pass through this service: clients upload and download
directly against object storage with short-lived URLs.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from ..core.storage import ObjectStorage
from ..db.models import (
    EntityType,
    FileUrl,
    FileUrlsResponse,
    TripRole,
    UploadRequest,
    get_entity_definition,
)
from ..db.repository import EntityStore
from .batch import process_concurrently
from .errors import AccessDeniedError, EntityNotFoundError, InvalidOperationError
from .operations import OperationApplier

logger = logging.getLogger(__name__)

# Column holding the uploaded object for each file-bearing entity type
FILE_COLUMNS = {
    EntityType.MEDIA_ITEM: "object_name",
    EntityType.GPX_TRACK: "gpx_file_object_name",
}


class FileSyncService:
    """Batch download/upload URLs and upload completion."""

    def __init__(
        self,
        store: EntityStore,
        storage: ObjectStorage,
        default_expiry: int = 3600,
        concurrency: int = 10,
    ):
        self.store = store
        self.storage = storage
        self.default_expiry = default_expiry
        self.concurrency = concurrency

    async def _visible(self, applier: OperationApplier, entity_type: EntityType, entity: dict) -> bool:
        try:
            await applier.authorize(self.store, get_entity_definition(entity_type), entity, TripRole.VIEWER)
        except AccessDeniedError:
            logger.info(f"Skipping {entity_type.value} {entity['id']}: no access")
            return False
        return True

    async def generate_download_urls(
        self,
        user_id: str,
        media_item_ids: list[str],
        gpx_track_ids: list[str],
        expires_in: Optional[int] = None,
    ) -> FileUrlsResponse:
        """
        Download URLs for the files (and thumbnails) of the requested entities.

        Entities the caller cannot see, unknown ids and URL failures are skipped.
        """
        generated_at = datetime.now(timezone.utc)
        expiry = expires_in or self.default_expiry
        applier = OperationApplier(user_id)
        targets: list[tuple[str, str, str]] = []

        for media_item in await self.store.repository(EntityType.MEDIA_ITEM).find_by_ids(media_item_ids):
            if not await self._visible(applier, EntityType.MEDIA_ITEM, media_item):
                continue
            if media_item.get("object_name"):
                targets.append((media_item["id"], "MediaItem", media_item["object_name"]))
            if media_item.get("thumbnail_object_name"):
                targets.append((media_item["id"], "MediaItemThumbnail", media_item["thumbnail_object_name"]))

        for track in await self.store.repository(EntityType.GPX_TRACK).find_by_ids(gpx_track_ids):
            if not await self._visible(applier, EntityType.GPX_TRACK, track):
                continue
            if track.get("gpx_file_object_name"):
                targets.append((track["id"], "GPXTrack", track["gpx_file_object_name"]))

        async def sign(target: tuple[str, str, str]) -> FileUrl:
            entity_id, entity_type, object_name = target
            url = await self.storage.generate_presigned_get_url(object_name, expiry)
            return FileUrl(
                entity_id=entity_id,
                entity_type=entity_type,
                object_name=object_name,
                url=url,
                expires_in=expiry,
            )

        urls = await process_concurrently(targets, sign, self.concurrency)
        logger.info(f"Generated {len(urls)} download URL(s) for user {user_id}")
        return FileUrlsResponse(urls=urls, generated_at=generated_at)

    async def generate_upload_urls(
        self,
        user_id: str,
        requests: list[UploadRequest],
        expires_in: Optional[int] = None,
    ) -> FileUrlsResponse:
        """Upload URLs for each request; failures are logged and skipped."""
        generated_at = datetime.now(timezone.utc)
        expiry = expires_in or self.default_expiry

        async def sign(request: UploadRequest) -> FileUrl:
            url = await self.storage.generate_presigned_put_url(request.object_name, request.mime_type, expiry)
            return FileUrl(
                entity_id=request.entity_id,
                entity_type=request.entity_type,
                object_name=request.object_name,
                url=url,
                expires_in=expiry,
            )

        urls = await process_concurrently(requests, sign, self.concurrency)
        logger.info(f"Generated {len(urls)} upload URL(s) for user {user_id}")
        return FileUrlsResponse(urls=urls, generated_at=generated_at)

    async def mark_upload_complete(
        self,
        user_id: str,
        entity_id: str,
        entity_type: str,
        object_name: str,
    ) -> dict:
        """Point a media item or GPX track at its uploaded object."""
        try:
            parsed_type = EntityType.parse(entity_type)
        except ValueError:
            raise InvalidOperationError(f"Unsupported entity type: {entity_type}")
        column = FILE_COLUMNS.get(parsed_type)
        if column is None:
            raise InvalidOperationError(f"Unsupported entity type: {entity_type}")

        definition = get_entity_definition(parsed_type)
        repo = self.store.repository(parsed_type)
        entity = await repo.get_by_id(entity_id)
        if entity is None:
            raise EntityNotFoundError(parsed_type.value, entity_id)

        applier = OperationApplier(user_id)
        await applier.authorize(self.store, definition, entity, TripRole.EDITOR)

        if entity.get(column) != object_name:
            entity = await applier.save(self.store, definition, {**entity, column: object_name})
            logger.info(f"{parsed_type.value} {entity_id} now points at {object_name}")
        return definition.serialize(entity)
