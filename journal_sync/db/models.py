"""
Pydantic models for Journal Sync Service.

These models define the syncable journal entities (trips, memories, media,
GPX tracks, tags, bucket list items), the sync operation wire format, and
the conflict/device/tombstone records the sync core persists.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


# ============================================================================
# Enums
# ============================================================================

class EntityType(str, Enum):
    """Entity kinds that take part in sync."""
    TRIP = "Trip"
    MEMORY = "Memory"
    MEDIA_ITEM = "MediaItem"
    TAG = "Tag"
    TAG_CATEGORY = "TagCategory"
    BUCKET_LIST_ITEM = "BucketListItem"
    GPX_TRACK = "GPXTrack"

    @classmethod
    def parse(cls, value: Any) -> "EntityType":
        """Resolve an entity type name case-insensitively."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for member in cls:
                if member.value.lower() == key:
                    return member
        raise ValueError(f"Unknown entity type: {value}")


class OperationType(str, Enum):
    """Kind of change carried by a sync operation."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    UPSERT = "UPSERT"


class ConflictStrategy(str, Enum):
    """Conflict resolution strategies."""
    LAST_WRITE_WINS = "lastWriteWins"
    FIELD_LEVEL = "fieldLevel"
    DEVICE_PRIORITY = "devicePriority"
    USER_CHOICE = "userChoice"


class ConflictStatus(str, Enum):
    """Lifecycle of a conflict log entry."""
    PENDING = "pending"
    PENDING_USER_CHOICE = "pending_user_choice"
    RESOLVED = "resolved"


class ConflictType(str, Enum):
    """Classification produced by the conflict detector."""
    NONE = "none"
    TIMESTAMP = "timestamp"
    DATA = "data"
    STRUCTURAL = "structural"


class Winner(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class TripRole(str, Enum):
    """The role of a user in a trip."""
    OWNER = "OWNER"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"
    PENDING = "PENDING"


# PENDING members have not accepted the invitation and get no access
ROLE_LEVELS = {
    TripRole.PENDING: 0,
    TripRole.VIEWER: 1,
    TripRole.EDITOR: 2,
    TripRole.OWNER: 3,
}


class DeviceType(str, Enum):
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


class SyncResultStatus(str, Enum):
    SUCCESS = "success"
    RESOLVED = "resolved"
    FAILED = "failed"


class EntityScope(str, Enum):
    """How an entity type is scoped to a caller."""
    SELF = "self"        # the trip itself
    TRIP = "trip"        # has a trip_id column
    MEMORY = "memory"    # reaches its trip through memory_id
    USER = "user"        # owned by creator_id
    GLOBAL = "global"    # visible to everyone


# ============================================================================
# Syncable Entity Models
# ============================================================================

class SyncEntity(BaseModel):
    """
    Common fields of every syncable entity.

    Wire payloads are camelCase, storage rows are snake_case. Every field is
    optional so partial UPDATE payloads validate; unknown fields are dropped.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: Optional[str] = None
    server_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Trip(SyncEntity):
    name: Optional[str] = Field(None, max_length=255)
    trip_description: Optional[str] = None
    travel_companions: Optional[str] = None
    visited_countries: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    total_distance: Optional[float] = None
    gps_tracking_enabled: Optional[bool] = None
    cover_image_object_name: Optional[str] = None


class Memory(SyncEntity):
    title: Optional[str] = Field(None, max_length=255)
    text: Optional[str] = None
    timestamp: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = None
    trip_id: Optional[str] = None
    creator_id: Optional[str] = None


class MediaItem(SyncEntity):
    media_type: Optional[str] = None
    timestamp: Optional[datetime] = None
    order: Optional[int] = None
    object_name: Optional[str] = None
    filesize: Optional[int] = None
    duration: Optional[float] = None
    thumbnail_object_name: Optional[str] = None
    memory_id: Optional[str] = None
    uploader_id: Optional[str] = None


class Tag(SyncEntity):
    name: Optional[str] = Field(None, max_length=100)
    normalized_name: Optional[str] = None
    display_name: Optional[str] = None
    emoji: Optional[str] = None
    color: Optional[str] = None
    is_system_tag: Optional[bool] = None
    usage_count: Optional[int] = None
    last_used_at: Optional[datetime] = None
    is_archived: Optional[bool] = None
    sort_order: Optional[int] = None
    tag_description: Optional[str] = None
    category_id: Optional[str] = None
    creator_id: Optional[str] = None


class TagCategory(SyncEntity):
    name: Optional[str] = Field(None, max_length=100)
    display_name: Optional[str] = None
    emoji: Optional[str] = None
    color: Optional[str] = None
    is_system_category: Optional[bool] = None
    sort_order: Optional[int] = None
    is_expanded: Optional[bool] = None
    creator_id: Optional[str] = None


class BucketListItem(SyncEntity):
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    is_completed: Optional[bool] = None
    completed_at: Optional[datetime] = None
    target_date: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    completion_memory_id: Optional[str] = None
    creator_id: Optional[str] = None


class GPXTrack(SyncEntity):
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    gpx_file_object_name: Optional[str] = None
    trip_id: Optional[str] = None
    creator_id: Optional[str] = None


# ============================================================================
# Entity Registry
# ============================================================================

@dataclass(frozen=True)
class EntityDefinition:
    """Static description of how one entity type is stored and scoped."""
    entity_type: EntityType
    model: type[SyncEntity]
    table: str
    scope: EntityScope

    @property
    def columns(self) -> tuple[str, ...]:
        return tuple(self.model.model_fields)

    def parse(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate a wire payload into a snake_case dict of the fields sent."""
        return self.model.model_validate(data).model_dump(exclude_unset=True)

    def serialize(self, entity: dict[str, Any]) -> dict[str, Any]:
        """Render a stored entity in the camelCase wire format."""
        return self.model.model_validate(entity).model_dump(mode="json", by_alias=True)


ENTITY_REGISTRY: dict[EntityType, EntityDefinition] = {
    EntityType.TRIP: EntityDefinition(EntityType.TRIP, Trip, "trips", EntityScope.SELF),
    EntityType.MEMORY: EntityDefinition(EntityType.MEMORY, Memory, "memories", EntityScope.TRIP),
    EntityType.MEDIA_ITEM: EntityDefinition(
        EntityType.MEDIA_ITEM, MediaItem, "media_items", EntityScope.MEMORY
    ),
    EntityType.TAG: EntityDefinition(EntityType.TAG, Tag, "tags", EntityScope.GLOBAL),
    EntityType.TAG_CATEGORY: EntityDefinition(
        EntityType.TAG_CATEGORY, TagCategory, "tag_categories", EntityScope.GLOBAL
    ),
    EntityType.BUCKET_LIST_ITEM: EntityDefinition(
        EntityType.BUCKET_LIST_ITEM, BucketListItem, "bucket_list_items", EntityScope.USER
    ),
    EntityType.GPX_TRACK: EntityDefinition(
        EntityType.GPX_TRACK, GPXTrack, "gpx_tracks", EntityScope.TRIP
    ),
}

_unregistered = set(EntityType) - set(ENTITY_REGISTRY)
if _unregistered:
    raise RuntimeError(f"Entity types without a registry entry: {sorted(t.value for t in _unregistered)}")


def get_entity_definition(entity_type: Union[EntityType, str]) -> EntityDefinition:
    """Look up the registry entry for an entity type (name or enum)."""
    return ENTITY_REGISTRY[EntityType.parse(entity_type)]


# ============================================================================
# Sync Operation Models
# ============================================================================

class SyncOperation(BaseModel):
    """One client change inside a sync batch."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., min_length=1)
    type: Optional[OperationType] = Field(
        None, validation_alias=AliasChoices("type", "operation")
    )
    entity_type: EntityType
    data: dict[str, Any]
    dependencies: list[str] = Field(default_factory=list)
    timestamp: Optional[datetime] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("entity_type", mode="before")
    @classmethod
    def parse_entity_type(cls, v: Any) -> EntityType:
        return EntityType.parse(v)

    @field_validator("data", mode="before")
    @classmethod
    def parse_data(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"data is not well-formed JSON: {e.msg}")
        if not isinstance(v, dict):
            raise ValueError("data must be a JSON object")
        return v

    @field_validator("dependencies", mode="before")
    @classmethod
    def default_dependencies(cls, v: Any) -> Any:
        return [] if v is None else v

    @model_validator(mode="after")
    def require_entity_id_for_changes(self):
        """UPDATE and DELETE must name the entity they change."""
        if self.type in (OperationType.UPDATE, OperationType.DELETE) and not self.entity_id:
            raise ValueError(f"{self.type.value} requires data.id or data.serverId")
        return self

    @property
    def entity_id(self) -> Optional[str]:
        value = self.data.get("id") or self.data.get("serverId") or self.data.get("server_id")
        return str(value) if value else None


class SyncResult(BaseModel):
    """Outcome of one applied operation."""
    id: str
    status: SyncResultStatus
    data: Optional[Any] = None
    error: Optional[str] = None
    conflict_id: Optional[str] = None
    entity_type: Optional[str] = None
    processing_time_ms: Optional[float] = None


class FailedOperation(BaseModel):
    """Outcome of one operation that could not be applied."""
    id: str
    error: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    operation_type: Optional[str] = None


# ============================================================================
# Conflict Models
# ============================================================================

class ConflictDetectionResult(BaseModel):
    has_conflict: bool
    conflicted_fields: list[str] = Field(default_factory=list)
    conflict_type: ConflictType = ConflictType.NONE
    local_checksum: Optional[str] = None
    remote_checksum: Optional[str] = None


class _ConflictMetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    details: Optional[str] = None


class LastWriteWinsMetadata(_ConflictMetadataBase):
    strategy: Literal["lastWriteWins"] = "lastWriteWins"
    winner: Winner
    local_timestamp: datetime
    remote_timestamp: datetime


class FieldLevelMetadata(_ConflictMetadataBase):
    strategy: Literal["fieldLevel"] = "fieldLevel"
    changed_fields: list[str] = Field(default_factory=list)


class DevicePriorityMetadata(_ConflictMetadataBase):
    strategy: Literal["devicePriority"] = "devicePriority"
    winner: Winner
    device_priority: int


class UserChoiceMetadata(_ConflictMetadataBase):
    strategy: Literal["userChoice"] = "userChoice"
    status: Literal["pending"] = "pending"
    note: Optional[str] = None


ConflictMetadata = Annotated[
    Union[LastWriteWinsMetadata, FieldLevelMetadata, DevicePriorityMetadata, UserChoiceMetadata],
    Field(discriminator="strategy"),
]

conflict_metadata_adapter: TypeAdapter = TypeAdapter(ConflictMetadata)


class ConflictResolutionResult(BaseModel):
    resolved_entity: dict[str, Any]
    conflict_id: str
    metadata: ConflictMetadata
    strategy: ConflictStrategy


class ConflictInfo(BaseModel):
    conflict_id: str
    entity_type: str
    entity_id: str
    resolution: ConflictMetadata
    strategy: ConflictStrategy


class ConflictLogEntry(BaseModel):
    """Audit record of one detected conflict."""
    id: str
    entity_type: str
    entity_id: str
    device_id: str
    user_id: Optional[str] = None
    strategy: str  # raw tag, unknown strategies are logged too
    local_version: str
    remote_version: str
    timestamp: datetime
    status: ConflictStatus = ConflictStatus.PENDING
    resolution: Optional[dict[str, Any]] = None
    resolved_at: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None

    class Config:
        from_attributes = True


class ConflictMetrics(BaseModel):
    total_conflicts: int
    resolved_conflicts: int
    pending_conflicts: int
    resolution_rate: float
    timeframe: str


# ============================================================================
# Device Models
# ============================================================================

class DeviceCreate(BaseModel):
    """Schema for registering a device. The name doubles as device id when none is given."""
    name: str = Field(..., min_length=1, max_length=255)
    device_id: Optional[str] = Field(None, min_length=1, max_length=255)
    type: DeviceType
    priority: int = Field(0, ge=0, le=100)


class DevicePriorityUpdate(BaseModel):
    priority: int = Field(..., ge=0, le=100)


class DeviceInfo(BaseModel):
    """A known client device."""
    id: str
    device_id: str
    name: str
    type: DeviceType
    priority: int = 0
    last_seen: datetime
    user_id: str

    class Config:
        from_attributes = True


# ============================================================================
# Membership and Tombstone Models
# ============================================================================

class TripMembership(BaseModel):
    id: str
    trip_id: str
    user_id: str
    role: TripRole = TripRole.VIEWER


class DeletionLog(BaseModel):
    """Tombstone telling clients to drop their local copy."""
    entity_id: str
    entity_type: EntityType
    trip_id: Optional[str] = None
    owner_id: Optional[str] = None
    deleted_at: datetime


class DeletedIds(BaseModel):
    trips: list[str] = Field(default_factory=list)
    memories: list[str] = Field(default_factory=list)
    media_items: list[str] = Field(default_factory=list)
    gpx_tracks: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    tag_categories: list[str] = Field(default_factory=list)
    bucket_list_items: list[str] = Field(default_factory=list)

    @classmethod
    def from_tombstones(cls, tombstones: list[DeletionLog]) -> "DeletedIds":
        buckets: dict[EntityType, list[str]] = {entity_type: [] for entity_type in EntityType}
        for tombstone in tombstones:
            buckets[tombstone.entity_type].append(tombstone.entity_id)
        return cls(
            trips=buckets[EntityType.TRIP],
            memories=buckets[EntityType.MEMORY],
            media_items=buckets[EntityType.MEDIA_ITEM],
            gpx_tracks=buckets[EntityType.GPX_TRACK],
            tags=buckets[EntityType.TAG],
            tag_categories=buckets[EntityType.TAG_CATEGORY],
            bucket_list_items=buckets[EntityType.BUCKET_LIST_ITEM],
        )


# ============================================================================
# Request / Response Models
# ============================================================================

class BatchSyncOptions(BaseModel):
    batch_size: Optional[int] = Field(None, ge=1, le=1000)
    max_concurrency: Optional[int] = Field(None, ge=1, le=100)
    timeout: Optional[int] = Field(None, ge=1, description="Advisory per-chunk budget in ms")
    skip_validation: bool = False


class BatchSyncRequest(BaseModel):
    # Raw dicts so one malformed operation does not reject the whole request
    operations: list[dict[str, Any]]
    options: Optional[BatchSyncOptions] = None


class BatchSyncResponse(BaseModel):
    successful: list[SyncResult] = Field(default_factory=list)
    failed: list[FailedOperation] = Field(default_factory=list)
    processed: int
    duration: float
    timestamp: datetime
    success_rate: float
    performance_metrics: dict[str, Any] = Field(default_factory=dict)


class ConflictAwareSyncRequest(BaseModel):
    operations: list[dict[str, Any]]
    device_id: str = Field(..., min_length=1)
    strategy: Optional[ConflictStrategy] = None


class ConflictAwareSyncResponse(BaseModel):
    resolved: list[SyncResult] = Field(default_factory=list)
    conflicts: list[ConflictInfo] = Field(default_factory=list)
    failed: list[FailedOperation] = Field(default_factory=list)
    total_processed: int = 0


class SyncResponse(BaseModel):
    """Everything that changed for a caller since a watermark."""
    trips: list[dict[str, Any]] = Field(default_factory=list)
    memories: list[dict[str, Any]] = Field(default_factory=list)
    media_items: list[dict[str, Any]] = Field(default_factory=list)
    gpx_tracks: list[dict[str, Any]] = Field(default_factory=list)
    tags: list[dict[str, Any]] = Field(default_factory=list)
    tag_categories: list[dict[str, Any]] = Field(default_factory=list)
    bucket_list_items: list[dict[str, Any]] = Field(default_factory=list)
    deleted: DeletedIds = Field(default_factory=DeletedIds)
    server_timestamp: datetime


class UploadRequest(BaseModel):
    entity_id: str
    entity_type: str
    object_name: str = Field(..., min_length=1)
    mime_type: str = Field(..., min_length=1)


class UploadUrlsRequest(BaseModel):
    upload_requests: list[UploadRequest]
    expires_in: Optional[int] = Field(None, ge=1, le=7 * 24 * 3600)


class DownloadUrlsRequest(BaseModel):
    media_item_ids: list[str] = Field(default_factory=list)
    gpx_track_ids: list[str] = Field(default_factory=list)
    expires_in: Optional[int] = Field(None, ge=1, le=7 * 24 * 3600)


class UploadCompleteRequest(BaseModel):
    entity_id: str
    entity_type: str
    object_name: str = Field(..., min_length=1)


class FileUrl(BaseModel):
    entity_id: str
    entity_type: str
    object_name: str
    url: str
    expires_in: int


class FileUrlsResponse(BaseModel):
    urls: list[FileUrl] = Field(default_factory=list)
    generated_at: datetime
