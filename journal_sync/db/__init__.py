# Database module
from .connection import get_db_pool, init_db, close_db
from .models import (
    ConflictStrategy,
    EntityType,
    OperationType,
    SyncOperation,
    TripRole,
)
from .repository import EntityRepository, EntityStore

__all__ = [
    "get_db_pool",
    "init_db",
    "close_db",
    "ConflictStrategy",
    "EntityType",
    "OperationType",
    "SyncOperation",
    "TripRole",
    "EntityRepository",
    "EntityStore",
]
