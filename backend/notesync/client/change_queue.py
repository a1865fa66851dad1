"""Turns pending replica records into a push batch.

The queue holds no state of its own: the replica's ``pending`` rows *are* the
queue.  Building a batch snapshots each row's ``revision`` so the coordinator
can tell, when results arrive, whether a record was edited again while the
push was in flight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from notesync.client.replica_store import ReplicaRecord, ReplicaStore
from notesync.constants import PUSHABLE_TYPES, EntityType
from notesync.utils.datetime_utils import datetime_to_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushEntry:
    """What was sent for one replica record."""

    local_id: str
    entity_type: EntityType
    server_id: int | None
    revision: int
    deleted: bool = False


@dataclass
class PushBatch:
    notes: list[dict[str, Any]] = field(default_factory=list)
    folders: list[dict[str, Any]] = field(default_factory=list)
    entries: list[PushEntry] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def find(
        self,
        entity_type: EntityType | str,
        *,
        local_id: str | None = None,
        server_id: int | None = None,
    ) -> PushEntry | None:
        """Match a push result back to the entry it answers.

        Creates are matched by ``local_id``; updates and deletes by server id.
        """
        entity_type = EntityType(entity_type)
        if local_id:
            for entry in self.entries:
                if entry.entity_type == entity_type and entry.local_id == local_id:
                    return entry
        if server_id is not None:
            for entry in self.entries:
                if entry.entity_type == entity_type and entry.server_id == server_id:
                    return entry
        return None


class ChangeQueue:
    """Builds :class:`PushBatch` objects from a :class:`ReplicaStore`."""

    def __init__(self, store: ReplicaStore) -> None:
        self._store = store

    async def build_batch(self) -> PushBatch:
        batch = PushBatch()
        purged = 0

        for record in await self._store.list_pending():
            entity_type = EntityType(record.entity_type)
            if entity_type not in PUSHABLE_TYPES:
                logger.debug("Skipping pending %s %s: not pushable", entity_type, record.local_id)
                continue
            if record.server_id is None and record.deleted_at is not None:
                if await self._store.purge(record.local_id):
                    purged += 1
                continue

            item = to_wire_item(record)
            if entity_type == EntityType.NOTE:
                batch.notes.append(item)
            else:
                batch.folders.append(item)
            batch.entries.append(
                PushEntry(
                    local_id=record.local_id,
                    entity_type=entity_type,
                    server_id=record.server_id,
                    revision=record.revision,
                    deleted=record.deleted_at is not None,
                )
            )

        if purged:
            logger.info("Dropped %d records created and deleted while offline", purged)
        return batch


def to_wire_item(record: ReplicaRecord) -> dict[str, Any]:
    """Serialize a pending record into a push item.

    - never pushed: payload + ``localId`` + ``_isNew``
    - deleted:      ``id`` + ``_deleted``
    - edited:       payload + ``id`` + ``_baseUpdatedAt``
    """
    if record.server_id is None:
        return {**record.data, "localId": record.local_id, "_isNew": True}
    if record.deleted_at is not None:
        return {"id": record.server_id, "_deleted": True}
    return {
        **record.data,
        "id": record.server_id,
        "_baseUpdatedAt": datetime_to_iso(record.base_updated_at),
    }
