"""
Conflict log API routes.

Read the conflict audit trail, complete conflicts deferred to the user and
report resolution metrics.
"""

from fastapi import APIRouter, HTTPException, Query, status

from ..deps import ApiKey, CallerId, ConflictEngine, Orchestrator, Store
from ...db.models import (
    ConflictLogEntry,
    ConflictMetrics,
    ConflictStatus,
    SyncResult,
    Winner,
)
from ...sync.errors import AccessDeniedError, EntityNotFoundError, InvalidOperationError

router = APIRouter(prefix="/sync/conflicts", tags=["conflicts"])


@router.get("", response_model=list[ConflictLogEntry])
async def list_conflicts(
    store: Store,
    caller_id: CallerId,
    api_key: ApiKey,
    pending_only: bool = Query(True, description="Only conflicts that are not resolved yet"),
    limit: int = Query(100, ge=1, le=1000),
) -> list[ConflictLogEntry]:
    """List the caller's conflicts, newest first."""
    statuses = [ConflictStatus.PENDING, ConflictStatus.PENDING_USER_CHOICE] if pending_only else None
    return await store.conflict_log.list_for_user(caller_id, statuses=statuses, limit=limit)


@router.get("/metrics", response_model=ConflictMetrics)
async def get_conflict_metrics(
    engine: ConflictEngine,
    caller_id: CallerId,
    api_key: ApiKey,
    timeframe: str = Query("24h", description="<n>h, <n>d or <n>w"),
) -> ConflictMetrics:
    """The caller's conflict counts and resolution rate over a timeframe."""
    return await engine.get_metrics(timeframe, user_id=caller_id)


@router.get("/{conflict_id}", response_model=ConflictLogEntry)
async def get_conflict(
    conflict_id: str,
    store: Store,
    caller_id: CallerId,
    api_key: ApiKey,
) -> ConflictLogEntry:
    """Get one conflict log entry."""
    entry = await store.conflict_log.get_by_id(conflict_id)
    if not entry or (entry.user_id and entry.user_id != caller_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conflict not found",
        )
    return entry


@router.post("/{conflict_id}/resolve", response_model=SyncResult)
async def resolve_conflict(
    conflict_id: str,
    orchestrator: Orchestrator,
    caller_id: CallerId,
    api_key: ApiKey,
    choice: Winner = Query(..., description="Which version to keep"),
) -> SyncResult:
    """Complete a conflict that is waiting for the user's decision."""
    try:
        return await orchestrator.resolve_pending_conflict(conflict_id, choice, caller_id)
    except EntityNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conflict not found",
        )
    except AccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except InvalidOperationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
