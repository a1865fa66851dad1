from enum import StrEnum


class EntityType(StrEnum):
    NOTE = "note"
    FOLDER = "folder"
    TAG = "tag"


class ChangeAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(StrEnum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


class CoordinatorState(StrEnum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    REFRESHING_CACHE = "refreshing_cache"
    ERROR = "error"


class ResolutionChoice(StrEnum):
    KEEP_SERVER = "keep_server"
    KEEP_LOCAL = "keep_local"


# Entity payload fields carried on the wire and in the client replica.
NOTE_FIELDS: tuple[str, ...] = ("title", "content", "folder_id", "offline_enabled", "is_pinned", "tags")
FOLDER_FIELDS: tuple[str, ...] = ("name", "parent_id")
TAG_FIELDS: tuple[str, ...] = ("name",)

ENTITY_FIELDS: dict[EntityType, tuple[str, ...]] = {
    EntityType.NOTE: NOTE_FIELDS,
    EntityType.FOLDER: FOLDER_FIELDS,
    EntityType.TAG: TAG_FIELDS,
}

# Entity types a client may push (tags are derived from note tag names).
PUSHABLE_TYPES: tuple[EntityType, ...] = (EntityType.NOTE, EntityType.FOLDER)
