"""
File sync API routes.

Issue presigned URLs so clients move file content directly to and from
object storage.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, status

from ..deps import ApiKey, CallerId, FileService
from ...db.models import (
    DownloadUrlsRequest,
    FileUrlsResponse,
    UploadCompleteRequest,
    UploadUrlsRequest,
)
from ...sync.errors import AccessDeniedError, EntityNotFoundError, InvalidOperationError

router = APIRouter(prefix="/files", tags=["files"])


@router.post("/download-urls", response_model=FileUrlsResponse)
async def generate_download_urls(
    request: DownloadUrlsRequest,
    files: FileService,
    caller_id: CallerId,
    api_key: ApiKey,
) -> FileUrlsResponse:
    """Download URLs for media items and GPX tracks the caller can see."""
    return await files.generate_download_urls(
        caller_id,
        request.media_item_ids,
        request.gpx_track_ids,
        request.expires_in,
    )


@router.post("/upload-urls", response_model=FileUrlsResponse)
async def generate_upload_urls(
    request: UploadUrlsRequest,
    files: FileService,
    caller_id: CallerId,
    api_key: ApiKey,
) -> FileUrlsResponse:
    """Upload URLs for a list of files."""
    return await files.generate_upload_urls(caller_id, request.upload_requests, request.expires_in)


@router.post("/upload-complete")
async def mark_upload_complete(
    request: UploadCompleteRequest,
    files: FileService,
    caller_id: CallerId,
    api_key: ApiKey,
) -> dict[str, Any]:
    """Record that a file finished uploading and point its entity at it."""
    try:
        entity = await files.mark_upload_complete(
            caller_id,
            request.entity_id,
            request.entity_type,
            request.object_name,
        )
    except EntityNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except InvalidOperationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"success": True, "entity": entity}
