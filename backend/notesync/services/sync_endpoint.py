"""Server side of the offline-first sync protocol.

Pull (delta since a cursor):
1. Non-deleted notes, folders and tags with ``updated_at > since``.
2. Deletion markers from the change log with ``timestamp > since``.
3. ``server_time``: the cursor the client adopts next.  It is taken when the
   pull starts, minus a small overlap, so rows committed while the pull runs
   are delivered again next time instead of being skipped.

Push (client batch of creates, updates and deletes):
- Every item is validated and applied in its own transaction; the entity
  write and its change-log row commit together.  One item failing never
  blocks the others.
- **Create** - keyed by the client's ``localId``; a replay returns the entity
  created the first time.
- **Update** - compare-and-swap on ``updated_at <= _baseUpdatedAt``.  A
  strictly newer (or deleted) server version yields a conflict and nothing
  is written.
- **Delete** - soft delete; deleting something already gone succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.config import Settings, get_settings
from notesync.constants import (
    FOLDER_FIELDS,
    NOTE_FIELDS,
    ChangeAction,
    EntityType,
)
from notesync.models import Folder, Note, NoteTag, Tag
from notesync.services.change_log import ChangeLog
from notesync.utils.datetime_utils import datetime_to_iso, utcnow
from notesync.utils.note_utils import extract_plain_text, normalize_tags

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Push item schemas
# ---------------------------------------------------------------------------


class _PushItem(BaseModel):
    """Fields common to every pushed item."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int | None = None
    local_id: str | None = Field(
        default=None,
        max_length=64,
        validation_alias=AliasChoices("localId", "_localId", "local_id"),
    )
    is_new: bool = Field(default=False, validation_alias=AliasChoices("_isNew", "is_new"))
    deleted: bool = Field(default=False, validation_alias=AliasChoices("_deleted", "deleted"))
    base_updated_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("_baseUpdatedAt", "base_updated_at"),
    )

    @model_validator(mode="after")
    def _check_identity(self) -> _PushItem:
        if self.deleted or not self.is_new:
            if self.id is None:
                raise ValueError("update and delete items require an id")
        elif not self.local_id:
            raise ValueError("new items require a localId")
        return self


class NotePushItem(_PushItem):
    title: str | None = None
    content: str | None = None
    folder_id: int | None = None
    offline_enabled: bool | None = None
    is_pinned: bool | None = None
    tags: list[str] | None = None


class FolderPushItem(_PushItem):
    name: str | None = Field(default=None, max_length=255)
    parent_id: int | None = None


_ITEM_MODELS: dict[EntityType, type[_PushItem]] = {
    EntityType.NOTE: NotePushItem,
    EntityType.FOLDER: FolderPushItem,
}

_ENTITY_MODELS: dict[EntityType, type[Note] | type[Folder]] = {
    EntityType.NOTE: Note,
    EntityType.FOLDER: Folder,
}

_PAYLOAD_FIELDS: dict[EntityType, tuple[str, ...]] = {
    EntityType.NOTE: NOTE_FIELDS,
    EntityType.FOLDER: FOLDER_FIELDS,
}


# ---------------------------------------------------------------------------
# Per-item results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Created:
    entity_type: EntityType
    local_id: str | None
    record: dict[str, Any]
    replayed: bool = False


@dataclass(frozen=True)
class Updated:
    entity_type: EntityType
    local_id: str | None
    record: dict[str, Any]


@dataclass(frozen=True)
class Deleted:
    entity_type: EntityType
    local_id: str | None
    entity_id: int


@dataclass(frozen=True)
class Conflict:
    """The server holds a version the client never saw; nothing was written."""

    entity_type: EntityType
    local_id: str | None
    entity_id: int
    local: dict[str, Any]
    server: dict[str, Any] | None  # None when the entity is deleted or absent


@dataclass(frozen=True)
class Rejected:
    entity_type: EntityType
    local_id: str | None
    entity_id: int | None
    reason: str


PushItemResult = Created | Updated | Deleted | Conflict | Rejected


@dataclass
class PushOutcome:
    """All per-item results of one push call."""

    results: list[PushItemResult] = field(default_factory=list)
    server_time: datetime = field(default_factory=utcnow)

    def of_type(self, kind: type) -> list:
        return [r for r in self.results if isinstance(r, kind)]


@dataclass
class PullResult:
    """Delta returned to a pulling client."""

    notes: list[dict[str, Any]] = field(default_factory=list)
    folders: list[dict[str, Any]] = field(default_factory=list)
    tags: list[dict[str, Any]] = field(default_factory=list)
    deletions: list[dict[str, Any]] = field(default_factory=list)
    server_time: datetime = field(default_factory=utcnow)


class _ItemRejected(Exception):
    """Raised inside item processing when the item references invalid data."""


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SyncEndpoint:
    """Authoritative pull/push operations for one request.

    Args:
        db: An SQLAlchemy async session.  ``push`` commits once per item.
        settings: Optional settings override.
    """

    def __init__(self, db: AsyncSession, settings: Settings | None = None) -> None:
        self._db = db
        self._settings = settings or get_settings()
        self._change_log = ChangeLog(db)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull(self, user_id: int, since: datetime | None) -> PullResult:
        """Return everything that changed for ``user_id`` after ``since``."""
        started = utcnow()
        server_time = started - timedelta(seconds=self._settings.SYNC_PULL_OVERLAP_SECONDS)
        if since is not None and server_time < since:
            server_time = since

        note_stmt = select(Note).where(Note.user_id == user_id, Note.deleted_at.is_(None))
        folder_stmt = select(Folder).where(Folder.user_id == user_id, Folder.deleted_at.is_(None))
        tag_stmt = select(Tag).where(Tag.user_id == user_id)
        if since is not None:
            note_stmt = note_stmt.where(Note.updated_at > since)
            folder_stmt = folder_stmt.where(Folder.updated_at > since)
            tag_stmt = tag_stmt.where(Tag.updated_at > since)

        notes = (await self._db.execute(note_stmt.order_by(Note.updated_at, Note.id))).scalars().all()
        folders = (await self._db.execute(folder_stmt.order_by(Folder.updated_at, Folder.id))).scalars().all()
        tags = (await self._db.execute(tag_stmt.order_by(Tag.updated_at, Tag.id))).scalars().all()
        tag_map = await self._tag_names([n.id for n in notes])
        deletions = await self._change_log.deletions_since(user_id, since)

        result = PullResult(
            notes=[serialize_note(n, tag_map.get(n.id, [])) for n in notes],
            folders=[serialize_folder(f) for f in folders],
            tags=[serialize_tag(t) for t in tags],
            deletions=[
                {
                    "entity_type": d.entity_type,
                    "entity_id": d.entity_id,
                    "timestamp": datetime_to_iso(d.timestamp),
                }
                for d in deletions
            ],
            server_time=server_time,
        )
        logger.info(
            "Pull user=%s since=%s: notes=%d folders=%d tags=%d deletions=%d",
            user_id,
            datetime_to_iso(since),
            len(result.notes),
            len(result.folders),
            len(result.tags),
            len(result.deletions),
        )
        return result

    async def offline_notes(self, user_id: int) -> list[dict[str, Any]]:
        """Return every live note the user flagged as available offline."""
        stmt = (
            select(Note)
            .where(
                Note.user_id == user_id,
                Note.offline_enabled.is_(True),
                Note.deleted_at.is_(None),
            )
            .order_by(Note.id)
        )
        notes = (await self._db.execute(stmt)).scalars().all()
        tag_map = await self._tag_names([n.id for n in notes])
        return [serialize_note(n, tag_map.get(n.id, [])) for n in notes]

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push(
        self,
        user_id: int,
        notes: list[Any] | None = None,
        folders: list[Any] | None = None,
        device_id: str | None = None,
    ) -> PushOutcome:
        """Apply a client batch item by item and report each outcome."""
        outcome = PushOutcome()

        for raw in folders or []:
            outcome.results.append(
                await self._process_item(EntityType.FOLDER, user_id, raw, device_id)
            )
        for raw in notes or []:
            outcome.results.append(
                await self._process_item(EntityType.NOTE, user_id, raw, device_id)
            )

        outcome.server_time = utcnow()
        logger.info(
            "Push user=%s device=%s: created=%d updated=%d deleted=%d conflicts=%d rejected=%d",
            user_id,
            device_id,
            len(outcome.of_type(Created)),
            len(outcome.of_type(Updated)),
            len(outcome.of_type(Deleted)),
            len(outcome.of_type(Conflict)),
            len(outcome.of_type(Rejected)),
        )
        return outcome

    async def _process_item(
        self,
        entity_type: EntityType,
        user_id: int,
        raw: Any,
        device_id: str | None,
    ) -> PushItemResult:
        raw_dict = raw if isinstance(raw, dict) else {}
        raw_local_id = raw_dict.get("localId") or raw_dict.get("_localId") or raw_dict.get("local_id")
        raw_id = raw_dict.get("id") if isinstance(raw_dict.get("id"), int) else None

        try:
            item = _ITEM_MODELS[entity_type].model_validate(raw)
        except ValidationError as exc:
            reason = "; ".join(_format_error(e) for e in exc.errors())
            logger.warning("Rejected %s item (local_id=%s): %s", entity_type, raw_local_id, reason)
            return Rejected(entity_type, raw_local_id, raw_id, reason)

        try:
            result = await self._apply_item(entity_type, user_id, item, device_id)
            await self._db.commit()
            return result
        except _ItemRejected as exc:
            await self._db.rollback()
            logger.warning("Rejected %s item (local_id=%s): %s", entity_type, item.local_id, exc)
            return Rejected(entity_type, item.local_id, item.id, str(exc))
        except IntegrityError:
            await self._db.rollback()
            if item.is_new and not item.deleted:
                # A concurrent replay of the same create won the insert race
                existing = await self._find_by_client_id(entity_type, user_id, item.local_id)
                if existing is not None:
                    return Created(entity_type, item.local_id, await self._serialize(entity_type, existing), True)
            logger.warning(
                "Integrity error applying %s item (local_id=%s, id=%s)",
                entity_type, item.local_id, item.id,
            )
            return Rejected(entity_type, item.local_id, item.id, "concurrent write, retry later")
        except Exception:
            await self._db.rollback()
            logger.exception(
                "Failed to apply %s item (local_id=%s, id=%s)",
                entity_type, item.local_id, item.id,
            )
            return Rejected(entity_type, item.local_id, item.id, "internal error")

    async def _apply_item(
        self,
        entity_type: EntityType,
        user_id: int,
        item: _PushItem,
        device_id: str | None,
    ) -> PushItemResult:
        if item.deleted:
            return await self._delete(entity_type, user_id, item, device_id)
        if item.is_new:
            return await self._create(entity_type, user_id, item, device_id)
        return await self._update(entity_type, user_id, item, device_id)

    async def _create(
        self,
        entity_type: EntityType,
        user_id: int,
        item: _PushItem,
        device_id: str | None,
    ) -> Created:
        existing = await self._find_by_client_id(entity_type, user_id, item.local_id)
        if existing is not None:
            logger.info(
                "Replayed create for %s local_id=%s -> id=%s", entity_type, item.local_id, existing.id
            )
            return Created(entity_type, item.local_id, await self._serialize(entity_type, existing), True)

        values = await self._column_values(entity_type, user_id, item)
        now = utcnow()
        if entity_type == EntityType.NOTE:
            entity: Note | Folder = Note(
                user_id=user_id,
                client_id=item.local_id,
                title=values.get("title") or "",
                content=values.get("content") or "",
                content_plain=extract_plain_text(values.get("content")),
                folder_id=values.get("folder_id"),
                offline_enabled=bool(values.get("offline_enabled")),
                is_pinned=bool(values.get("is_pinned")),
                created_at=now,
                updated_at=now,
            )
        else:
            entity = Folder(
                user_id=user_id,
                client_id=item.local_id,
                name=values.get("name") or "",
                parent_id=values.get("parent_id"),
                created_at=now,
                updated_at=now,
            )
        self._db.add(entity)
        await self._db.flush()

        if entity_type == EntityType.NOTE:
            await self._set_note_tags(user_id, entity.id, item.tags or [], device_id, replace=False)

        self._change_log.append(user_id, entity_type, entity.id, ChangeAction.CREATE, device_id, now)
        return Created(entity_type, item.local_id, await self._serialize(entity_type, entity))

    async def _update(
        self,
        entity_type: EntityType,
        user_id: int,
        item: _PushItem,
        device_id: str | None,
    ) -> Updated | Conflict:
        model = _ENTITY_MODELS[entity_type]
        local = item.model_dump(include=set(_PAYLOAD_FIELDS[entity_type]), exclude_unset=True)

        if item.base_updated_at is None:
            # The client never saw any version, so it cannot win against one
            return await self._conflict(entity_type, user_id, item, local)

        values = await self._column_values(entity_type, user_id, item)
        values.pop("tags", None)
        if entity_type == EntityType.NOTE and "content" in values:
            values["content_plain"] = extract_plain_text(values["content"])
        now = utcnow()
        values["updated_at"] = now

        stmt = (
            update(model)
            .where(
                model.id == item.id,
                model.user_id == user_id,
                model.deleted_at.is_(None),
                model.updated_at <= item.base_updated_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            return await self._conflict(entity_type, user_id, item, local)

        if entity_type == EntityType.NOTE and "tags" in item.model_fields_set:
            await self._set_note_tags(user_id, item.id, item.tags or [], device_id, replace=True)

        self._change_log.append(user_id, entity_type, item.id, ChangeAction.UPDATE, device_id, now)
        entity = await self._db.get(model, item.id, populate_existing=True)
        return Updated(entity_type, item.local_id, await self._serialize(entity_type, entity))

    async def _conflict(
        self,
        entity_type: EntityType,
        user_id: int,
        item: _PushItem,
        local: dict[str, Any],
    ) -> Conflict:
        current = await self._load(entity_type, user_id, item.id)
        server = None
        if current is not None and current.deleted_at is None:
            server = await self._serialize(entity_type, current)
        logger.info(
            "Conflict on %s %s: base=%s server=%s",
            entity_type,
            item.id,
            datetime_to_iso(item.base_updated_at),
            server["updated_at"] if server else "deleted",
        )
        return Conflict(entity_type, item.local_id, item.id, local, server)

    async def _delete(
        self,
        entity_type: EntityType,
        user_id: int,
        item: _PushItem,
        device_id: str | None,
    ) -> Deleted:
        entity = await self._load(entity_type, user_id, item.id)
        if entity is not None and entity.deleted_at is None:
            now = utcnow()
            entity.deleted_at = now
            entity.updated_at = now
            self._change_log.append(user_id, entity_type, entity.id, ChangeAction.DELETE, device_id, now)
        else:
            logger.debug("Delete of %s %s is a no-op (already gone)", entity_type, item.id)
        return Deleted(entity_type, item.local_id, item.id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _column_values(
        self, entity_type: EntityType, user_id: int, item: _PushItem
    ) -> dict[str, Any]:
        """Return the payload fields the client actually sent, with references checked.

        Only references that change are checked.  A note still pointing at a
        folder another device deleted keeps that reference and its edits apply.
        """
        values = item.model_dump(include=set(_PAYLOAD_FIELDS[entity_type]), exclude_unset=True)
        current = None
        if not item.is_new and item.id is not None:
            current = await self._load(entity_type, user_id, item.id)

        if entity_type == EntityType.NOTE:
            folder_id = values.get("folder_id")
            if folder_id is not None and (current is None or current.folder_id != folder_id):
                await self._require_folder(user_id, folder_id)
            for key in ("title", "content"):
                if key in values and values[key] is None:
                    values[key] = ""
            for key in ("offline_enabled", "is_pinned"):
                if key in values and values[key] is None:
                    values[key] = False
        else:
            parent_id = values.get("parent_id")
            if parent_id is not None:
                if parent_id == item.id:
                    raise _ItemRejected("folder cannot be its own parent")
                if current is None or current.parent_id != parent_id:
                    await self._require_folder(user_id, parent_id)
            if "name" in values and values["name"] is None:
                values["name"] = ""
        return values

    async def _require_folder(self, user_id: int, folder_id: int) -> None:
        folder = await self._load(EntityType.FOLDER, user_id, folder_id)
        if folder is None or folder.deleted_at is not None:
            raise _ItemRejected(f"unknown folder {folder_id}")

    async def _load(
        self, entity_type: EntityType, user_id: int, entity_id: int
    ) -> Note | Folder | None:
        model = _ENTITY_MODELS[entity_type]
        stmt = (
            select(model)
            .where(model.id == entity_id, model.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _find_by_client_id(
        self, entity_type: EntityType, user_id: int, client_id: str | None
    ) -> Note | Folder | None:
        if not client_id:
            return None
        model = _ENTITY_MODELS[entity_type]
        stmt = select(model).where(model.user_id == user_id, model.client_id == client_id)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _set_note_tags(
        self,
        user_id: int,
        note_id: int,
        names: list[str],
        device_id: str | None,
        *,
        replace: bool,
    ) -> None:
        """Link ``names`` to the note, creating missing tags by ``(user_id, name)``."""
        if replace:
            await self._db.execute(delete(NoteTag).where(NoteTag.note_id == note_id))
        for name in normalize_tags(names):
            tag = await self._upsert_tag(user_id, name, device_id)
            await self._db.execute(insert(NoteTag).values(note_id=note_id, tag_id=tag.id))

    async def _upsert_tag(self, user_id: int, name: str, device_id: str | None) -> Tag:
        stmt = select(Tag).where(Tag.user_id == user_id, Tag.name == name)
        tag = (await self._db.execute(stmt)).scalar_one_or_none()
        if tag is None:
            now = utcnow()
            tag = Tag(user_id=user_id, name=name, created_at=now, updated_at=now)
            self._db.add(tag)
            await self._db.flush()
            self._change_log.append(user_id, EntityType.TAG, tag.id, ChangeAction.CREATE, device_id, now)
        return tag

    async def _tag_names(self, note_ids: list[int]) -> dict[int, list[str]]:
        if not note_ids:
            return {}
        stmt = (
            select(NoteTag.note_id, Tag.name)
            .join(Tag, Tag.id == NoteTag.tag_id)
            .where(NoteTag.note_id.in_(note_ids))
            .order_by(Tag.name)
        )
        tag_map: dict[int, list[str]] = {}
        for note_id, name in (await self._db.execute(stmt)).all():
            tag_map.setdefault(note_id, []).append(name)
        return tag_map

    async def _serialize(self, entity_type: EntityType, entity: Note | Folder) -> dict[str, Any]:
        if entity_type == EntityType.NOTE:
            tag_map = await self._tag_names([entity.id])
            return serialize_note(entity, tag_map.get(entity.id, []))
        return serialize_folder(entity)


# ------------------------------------------------------------------
# Module-level utilities
# ------------------------------------------------------------------


def serialize_note(note: Note, tags: list[str]) -> dict[str, Any]:
    """Wire representation of a note."""
    return {
        "id": note.id,
        "title": note.title,
        "content": note.content,
        "folder_id": note.folder_id,
        "offline_enabled": note.offline_enabled,
        "is_pinned": note.is_pinned,
        "tags": list(tags),
        "created_at": datetime_to_iso(note.created_at),
        "updated_at": datetime_to_iso(note.updated_at),
        "deleted_at": datetime_to_iso(note.deleted_at),
    }


def serialize_folder(folder: Folder) -> dict[str, Any]:
    """Wire representation of a folder."""
    return {
        "id": folder.id,
        "name": folder.name,
        "parent_id": folder.parent_id,
        "created_at": datetime_to_iso(folder.created_at),
        "updated_at": datetime_to_iso(folder.updated_at),
        "deleted_at": datetime_to_iso(folder.deleted_at),
    }


def serialize_tag(tag: Tag) -> dict[str, Any]:
    """Wire representation of a tag."""
    return {
        "id": tag.id,
        "name": tag.name,
        "created_at": datetime_to_iso(tag.created_at),
        "updated_at": datetime_to_iso(tag.updated_at),
    }


def _format_error(error: dict) -> str:
    loc = ".".join(str(part) for part in error.get("loc", ()) if part != "__root__")
    message = error.get("msg", "invalid value")
    return f"{loc}: {message}" if loc else message
