"""
FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends

from ..core.config import get_settings
from ..core.security import get_api_key, get_caller_id
from ..core.storage import get_object_storage
from ..db.connection import get_db_pool
from ..db.repository import EntityStore
from ..sync.delta import DeltaSyncReconciler
from ..sync.devices import DeviceRegistry
from ..sync.files import FileSyncService
from ..sync.monitoring import SyncMonitor, get_monitor
from ..sync.orchestrator import SyncOrchestrator
from ..sync.resolver import ConflictResolutionEngine


async def get_entity_store() -> EntityStore:
    """Get EntityStore instance."""
    pool = await get_db_pool()
    return EntityStore(pool)


async def get_sync_monitor() -> SyncMonitor:
    """Get the process-wide SyncMonitor."""
    return get_monitor()


async def get_device_registry(
    store: EntityStore = Depends(get_entity_store),
) -> DeviceRegistry:
    """Get DeviceRegistry instance."""
    return DeviceRegistry(store.devices)


async def get_conflict_engine(
    store: EntityStore = Depends(get_entity_store),
    devices: DeviceRegistry = Depends(get_device_registry),
) -> ConflictResolutionEngine:
    """Get ConflictResolutionEngine instance."""
    settings = get_settings()
    return ConflictResolutionEngine(
        store.conflict_log,
        devices,
        priority_threshold=settings.device_priority_threshold,
    )


async def get_orchestrator(
    store: EntityStore = Depends(get_entity_store),
    engine: ConflictResolutionEngine = Depends(get_conflict_engine),
    monitor: SyncMonitor = Depends(get_sync_monitor),
) -> SyncOrchestrator:
    """Get SyncOrchestrator instance."""
    return SyncOrchestrator(store, engine, monitor)


async def get_delta_reconciler(
    store: EntityStore = Depends(get_entity_store),
    monitor: SyncMonitor = Depends(get_sync_monitor),
) -> DeltaSyncReconciler:
    """Get DeltaSyncReconciler instance."""
    return DeltaSyncReconciler(store, monitor)


async def get_file_service(
    store: EntityStore = Depends(get_entity_store),
) -> FileSyncService:
    """Get FileSyncService instance."""
    settings = get_settings()
    return FileSyncService(
        store,
        get_object_storage(),
        default_expiry=settings.presigned_url_expiry_seconds,
        concurrency=settings.batch_max_concurrency,
    )


# Type aliases for dependency injection
ApiKey = Annotated[str, Depends(get_api_key)]
CallerId = Annotated[str, Depends(get_caller_id)]
Store = Annotated[EntityStore, Depends(get_entity_store)]
Monitor = Annotated[SyncMonitor, Depends(get_sync_monitor)]
Devices = Annotated[DeviceRegistry, Depends(get_device_registry)]
ConflictEngine = Annotated[ConflictResolutionEngine, Depends(get_conflict_engine)]
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
DeltaSync = Annotated[DeltaSyncReconciler, Depends(get_delta_reconciler)]
FileService = Annotated[FileSyncService, Depends(get_file_service)]
