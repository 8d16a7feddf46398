"""
Sync API routes.

Clients push local changes (batch or conflict-aware) and pull everything
that changed since their last sync.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query

from ..deps import ApiKey, CallerId, DeltaSync, Orchestrator
from ...db.models import (
    BatchSyncRequest,
    BatchSyncResponse,
    ConflictAwareSyncRequest,
    ConflictAwareSyncResponse,
    SyncResponse,
)

router = APIRouter(prefix="/sync", tags=["sync"])


# ============================================================================
# Push Routes
# ============================================================================

@router.post("/batch", response_model=BatchSyncResponse)
async def batch_sync(
    request: BatchSyncRequest,
    orchestrator: Orchestrator,
    caller_id: CallerId,
    api_key: ApiKey,
) -> BatchSyncResponse:
    """
    Apply a batch of operations in concurrent, transactional chunks.

    Malformed operations fail individually; the rest still apply.
    """
    return await orchestrator.batch_sync(request.operations, caller_id, request.options)


@router.post("/conflict-aware", response_model=ConflictAwareSyncResponse)
async def conflict_aware_sync(
    request: ConflictAwareSyncRequest,
    orchestrator: Orchestrator,
    caller_id: CallerId,
    api_key: ApiKey,
) -> ConflictAwareSyncResponse:
    """Apply operations one by one, resolving conflicts with the requested strategy."""
    return await orchestrator.conflict_aware_sync(
        request.operations,
        device_id=request.device_id,
        user_id=caller_id,
        strategy=request.strategy,
    )


# ============================================================================
# Pull Routes
# ============================================================================

@router.get("/delta", response_model=SyncResponse)
async def delta_sync(
    reconciler: DeltaSync,
    caller_id: CallerId,
    api_key: ApiKey,
    last_synced_at: Optional[datetime] = Query(
        None, description="Watermark from the previous response's server_timestamp"
    ),
) -> SyncResponse:
    """Everything the caller may see that changed after ``last_synced_at``."""
    return await reconciler.sync(last_synced_at, caller_id)
