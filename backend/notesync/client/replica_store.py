"""Durable client-side replica of a user's notes, folders and tags.

Backed by SQLAlchemy async over SQLite (``aiosqlite``).  One store exists per
authenticated session; ``sqlite+aiosqlite:///:memory:`` gives a throwaway
replica for tests.

Every row carries a ``sync_status``:

- ``synced``   -- identical to the server version it was last acknowledged with
  (``base_updated_at == updated_at``, ``server_id`` set).
- ``pending``  -- local edits not yet acknowledged; may lack a ``server_id``.
- ``conflict`` -- the server holds a version this replica never based its edit
  on.  The local content is kept and the server version is parked in
  ``remote_conflict_data`` until the user resolves it.

Writes to a single record are serialized with a per-``local_id``
``asyncio.Lock``; each write is its own transaction.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index, Integer, String, Text, UniqueConstraint, delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from notesync.config import get_settings
from notesync.constants import ENTITY_FIELDS, EntityType, ResolutionChoice, SyncStatus
from notesync.utils.datetime_utils import datetime_from_iso, datetime_to_iso, utcnow
from notesync.utils.db_utils import UTCDateTime, create_engine_for_url
from notesync.utils.note_utils import normalize_tags

logger = logging.getLogger(__name__)

_CURSOR_KEY = "last_sync_at"
_DEVICE_KEY = "device_id"

# Marker stored in remote_conflict_data when the server deleted the entity
DELETED_MARKER: dict[str, bool] = {"deleted": True}


class ReplicaBase(DeclarativeBase):
    """Declarative base for the client replica (separate from the server schema)."""


class ReplicaRecord(ReplicaBase):
    """One note, folder or tag as seen by this device."""

    __tablename__ = "records"

    id: Mapped[int] = mapped_column(primary_key=True)  # creation order
    local_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    server_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    base_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sync_status: Mapped[str] = mapped_column(String(20), default=SyncStatus.PENDING.value)
    revision: Mapped[int] = mapped_column(Integer, default=0)
    remote_conflict_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("entity_type", "server_id", name="uq_records_type_server"),
        Index("idx_records_status", "sync_status"),
    )

    @property
    def remotely_deleted(self) -> bool:
        return bool(self.remote_conflict_data and self.remote_conflict_data.get("deleted") is True)

    def __repr__(self) -> str:
        return (
            f"<ReplicaRecord {self.entity_type} local_id={self.local_id} "
            f"server_id={self.server_id} status={self.sync_status}>"
        )


class ReplicaState(ReplicaBase):
    """Key/value metadata: sync cursor and device id."""

    __tablename__ = "replica_state"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)


class ReplicaStore:
    """Local replica with the state transitions the sync coordinator relies on.

    Args:
        url: SQLAlchemy async URL of the replica database.  Defaults to
            ``REPLICA_DATABASE_URL``.
    """

    def __init__(self, url: str | None = None) -> None:
        self._url = url or get_settings().REPLICA_DATABASE_URL
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> ReplicaStore:
        """Create the engine and tables.  Safe to call more than once."""
        if self._engine is None:
            self._engine = create_engine_for_url(self._url)
            self._session_factory = async_sessionmaker(
                bind=self._engine, class_=AsyncSession, expire_on_commit=False
            )
            async with self._engine.begin() as conn:
                await conn.run_sync(ReplicaBase.metadata.create_all)
            logger.debug("Replica store opened at %s", self._url)
        return self

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
        self._locks.clear()

    async def clear(self) -> None:
        """Wipe every record and all replica state (used on logout)."""
        async with self._session() as session:
            await session.execute(delete(ReplicaRecord))
            await session.execute(delete(ReplicaState))
        self._locks.clear()
        logger.info("Replica store cleared")

    async def __aenter__(self) -> ReplicaStore:
        return await self.open()

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, local_id: str) -> ReplicaRecord | None:
        async with self._session() as session:
            return await _get_row(session, local_id)

    async def get_by_server_id(
        self, entity_type: EntityType | str, server_id: int
    ) -> ReplicaRecord | None:
        async with self._session() as session:
            return await _get_row_by_server_id(session, entity_type, server_id)

    async def list_records(
        self,
        entity_type: EntityType | str | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[ReplicaRecord]:
        """Return records in creation order, hiding locally deleted ones by default."""
        stmt = select(ReplicaRecord)
        if entity_type is not None:
            stmt = stmt.where(ReplicaRecord.entity_type == str(entity_type))
        if not include_deleted:
            stmt = stmt.where(ReplicaRecord.deleted_at.is_(None))
        async with self._session() as session:
            return list((await session.execute(stmt.order_by(ReplicaRecord.id))).scalars().all())

    async def list_pending(self) -> list[ReplicaRecord]:
        """Return every ``pending`` record in creation order."""
        return await self._list_by_status(SyncStatus.PENDING)

    async def list_conflicts(self) -> list[ReplicaRecord]:
        return await self._list_by_status(SyncStatus.CONFLICT)

    async def _list_by_status(self, sync_status: SyncStatus) -> list[ReplicaRecord]:
        stmt = (
            select(ReplicaRecord)
            .where(ReplicaRecord.sync_status == sync_status.value)
            .order_by(ReplicaRecord.id)
        )
        async with self._session() as session:
            return list((await session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Local edits
    # ------------------------------------------------------------------

    async def create_local(
        self,
        entity_type: EntityType | str,
        data: dict[str, Any],
        *,
        local_id: str | None = None,
    ) -> ReplicaRecord:
        """Insert a new ``pending`` record that the server has never seen."""
        entity_type = EntityType(entity_type)
        now = utcnow()
        record = ReplicaRecord(
            local_id=local_id or uuid.uuid4().hex,
            entity_type=entity_type.value,
            server_id=None,
            data=_clean_payload(entity_type, data),
            updated_at=now,
            base_updated_at=None,
            sync_status=SyncStatus.PENDING.value,
            revision=1,
            created_at=now,
        )
        async with self._session() as session:
            session.add(record)
        return record

    async def mark_dirty(self, local_id: str, patch: dict[str, Any]) -> ReplicaRecord:
        """Merge a local edit into the record and queue it for the next push.

        ``base_updated_at`` is left alone.  A record in ``conflict`` stays in
        ``conflict``; its edits are pushed only after the user resolves it.

        Raises:
            KeyError: If no record has ``local_id``.
        """
        async with self._lock(local_id), self._session() as session:
            row = await _require_row(session, local_id)
            entity_type = EntityType(row.entity_type)
            row.data = {**row.data, **_clean_payload(entity_type, patch)}
            row.updated_at = utcnow()
            row.revision += 1
            if row.sync_status != SyncStatus.CONFLICT:
                row.sync_status = SyncStatus.PENDING.value
            return row

    async def mark_deleted_locally(self, local_id: str) -> ReplicaRecord:
        """Flag the record as deleted on this device; the deletion is pushed next cycle.

        Raises:
            KeyError: If no record has ``local_id``.
        """
        async with self._lock(local_id), self._session() as session:
            row = await _require_row(session, local_id)
            now = utcnow()
            row.deleted_at = now
            row.updated_at = now
            row.revision += 1
            if row.sync_status != SyncStatus.CONFLICT:
                row.sync_status = SyncStatus.PENDING.value
            return row

    async def purge(self, local_id: str) -> bool:
        """Drop a record that was created and deleted without ever reaching the server.

        Returns ``False`` (and keeps the row) if the record has a ``server_id``
        or is not deleted.
        """
        async with self._lock(local_id), self._session() as session:
            row = await _get_row(session, local_id)
            if row is None or row.server_id is not None or row.deleted_at is None:
                return False
            await session.delete(row)
        self._locks.pop(local_id, None)
        logger.debug("Purged never-synced record %s", local_id)
        return True

    # ------------------------------------------------------------------
    # Server-driven transitions
    # ------------------------------------------------------------------

    async def upsert_from_server(
        self, entity_type: EntityType | str, record: dict[str, Any]
    ) -> ReplicaRecord:
        """Apply a server version of an entity.

        New entities are inserted as ``synced``.  ``pending`` rows are held so
        local edits are never overwritten; ``conflict`` rows only get their
        ``remote_conflict_data`` refreshed.  An older server version than the
        one already stored is ignored.
        """
        entity_type = EntityType(entity_type)
        server_id = int(record["id"])
        server_updated = datetime_from_iso(record.get("updated_at"))

        existing = await self.get_by_server_id(entity_type, server_id)
        if existing is None:
            row = ReplicaRecord(
                local_id=uuid.uuid4().hex,
                entity_type=entity_type.value,
                server_id=server_id,
                data=_server_payload(entity_type, record),
                updated_at=server_updated,
                base_updated_at=server_updated,
                sync_status=SyncStatus.SYNCED.value,
                revision=0,
                created_at=utcnow(),
            )
            async with self._session() as session:
                session.add(row)
            return row

        async with self._lock(existing.local_id), self._session() as session:
            row = await _require_row(session, existing.local_id)
            if row.sync_status == SyncStatus.PENDING:
                logger.debug("Holding server version of %s %s: local edits pending", entity_type, server_id)
            elif row.sync_status == SyncStatus.CONFLICT:
                row.remote_conflict_data = dict(record)
            elif (
                server_updated is not None
                and row.updated_at is not None
                and server_updated < row.updated_at
            ):
                logger.debug("Ignoring stale server version of %s %s", entity_type, server_id)
            else:
                row.data = _server_payload(entity_type, record)
                row.updated_at = server_updated
                row.base_updated_at = server_updated
                row.deleted_at = None
            return row

    async def apply_server_deletion(self, entity_type: EntityType | str, server_id: int) -> bool:
        """Reflect a server-side deletion.

        A ``synced`` record (or one this device also deleted) is removed.  A
        record with unpushed edits becomes ``conflict`` with a deletion marker
        so the edit is surfaced instead of lost.

        Returns:
            ``True`` if a local record was affected.
        """
        existing = await self.get_by_server_id(entity_type, server_id)
        if existing is None:
            return False

        async with self._lock(existing.local_id), self._session() as session:
            row = await _get_row(session, existing.local_id)
            if row is None:
                return False
            if row.sync_status == SyncStatus.SYNCED or row.deleted_at is not None:
                await session.delete(row)
                removed = True
            else:
                row.sync_status = SyncStatus.CONFLICT.value
                row.remote_conflict_data = dict(DELETED_MARKER)
                removed = False
        if removed:
            self._locks.pop(existing.local_id, None)
        else:
            logger.info(
                "Server deleted %s %s with local edits pending; marked as conflict",
                entity_type,
                server_id,
            )
        return True

    async def acknowledge_push(
        self,
        local_id: str,
        server_record: dict[str, Any],
        pushed_revision: int,
    ) -> ReplicaRecord | None:
        """Record the server's acceptance of a pushed create or update.

        The record adopts the server id and timestamps.  If it was not edited
        again while the push was in flight it also adopts the server content
        and becomes ``synced``; otherwise it stays ``pending`` on top of the
        acknowledged version.
        """
        server_id = int(server_record["id"])
        server_updated = datetime_from_iso(server_record.get("updated_at"))

        async with self._lock(local_id), self._session() as session:
            row = await _get_row(session, local_id)
            if row is None:
                logger.warning("Push acknowledged for unknown record %s", local_id)
                return None
            entity_type = EntityType(row.entity_type)

            if row.server_id is None:
                duplicate = await _get_row_by_server_id(session, entity_type, server_id)
                if duplicate is not None and duplicate.local_id != local_id:
                    if duplicate.sync_status != SyncStatus.SYNCED:
                        logger.warning(
                            "Record %s already tracks %s %s with local edits; not linking %s",
                            duplicate.local_id, entity_type, server_id, local_id,
                        )
                        return row
                    await session.delete(duplicate)
                    await session.flush()
                row.server_id = server_id
            elif row.server_id != server_id:
                logger.warning(
                    "Push acknowledgement for %s names server id %s, expected %s",
                    local_id, server_id, row.server_id,
                )
                return row

            row.updated_at = server_updated
            row.base_updated_at = server_updated
            if row.revision == pushed_revision:
                row.data = _server_payload(entity_type, server_record)
                row.sync_status = SyncStatus.SYNCED.value
                row.remote_conflict_data = None
            return row

    async def acknowledge_delete(self, local_id: str) -> bool:
        """Remove a record after the server confirmed its deletion."""
        async with self._lock(local_id), self._session() as session:
            row = await _get_row(session, local_id)
            if row is None:
                return False
            await session.delete(row)
        self._locks.pop(local_id, None)
        return True

    async def mark_conflict(
        self, local_id: str, server_record: dict[str, Any] | None
    ) -> ReplicaRecord | None:
        """Park the server version next to the local edit; ``None`` means deleted remotely."""
        async with self._lock(local_id), self._session() as session:
            row = await _get_row(session, local_id)
            if row is None:
                return None
            row.sync_status = SyncStatus.CONFLICT.value
            row.remote_conflict_data = dict(server_record) if server_record else dict(DELETED_MARKER)
            return row

    async def resolve_conflict(
        self, local_id: str, choice: ResolutionChoice | str
    ) -> ReplicaRecord | None:
        """Settle a conflict by the user's choice.

        ``keep_server`` adopts the parked server version (or drops the record
        if the server deleted it) and returns it ``synced``.  ``keep_local``
        rebases the local content on the server version and returns it
        ``pending``; if the server deleted the entity, the local content is
        re-queued as a brand new record.

        Returns:
            The surviving record, or ``None`` if it was removed.

        Raises:
            KeyError: If no record has ``local_id``.
            ValueError: If the record is not in conflict.
        """
        choice = ResolutionChoice(choice)
        async with self._lock(local_id), self._session() as session:
            row = await _require_row(session, local_id)
            if row.sync_status != SyncStatus.CONFLICT:
                raise ValueError(f"Record {local_id} is not in conflict")
            entity_type = EntityType(row.entity_type)
            remote = row.remote_conflict_data or dict(DELETED_MARKER)
            remote_deleted = row.remotely_deleted or not remote.get("id")

            if choice == ResolutionChoice.KEEP_SERVER:
                if remote_deleted:
                    await session.delete(row)
                    survivor = None
                else:
                    remote_updated = datetime_from_iso(remote.get("updated_at"))
                    row.data = _server_payload(entity_type, remote)
                    row.server_id = int(remote["id"])
                    row.updated_at = remote_updated
                    row.base_updated_at = remote_updated
                    row.deleted_at = None
                    row.sync_status = SyncStatus.SYNCED.value
                    row.remote_conflict_data = None
                    survivor = row
            elif remote_deleted:
                await session.delete(row)
                if row.deleted_at is not None:
                    # Deleted on both sides
                    survivor = None
                else:
                    now = utcnow()
                    survivor = ReplicaRecord(
                        local_id=uuid.uuid4().hex,
                        entity_type=entity_type.value,
                        server_id=None,
                        data=dict(row.data),
                        updated_at=now,
                        base_updated_at=None,
                        sync_status=SyncStatus.PENDING.value,
                        revision=1,
                        created_at=now,
                    )
                    await session.flush()
                    session.add(survivor)
            else:
                remote_updated = datetime_from_iso(remote.get("updated_at"))
                row.base_updated_at = remote_updated
                row.updated_at = utcnow()
                row.revision += 1
                row.sync_status = SyncStatus.PENDING.value
                row.remote_conflict_data = None
                survivor = row

        if survivor is None or survivor.local_id != local_id:
            self._locks.pop(local_id, None)
        logger.info(
            "Resolved conflict on %s (%s) with %s",
            local_id,
            entity_type,
            choice,
        )
        return survivor

    # ------------------------------------------------------------------
    # Replica state
    # ------------------------------------------------------------------

    async def get_cursor(self) -> datetime | None:
        async with self._session() as session:
            return datetime_from_iso(await _get_state(session, _CURSOR_KEY))

    async def advance_cursor(self, server_time: datetime) -> datetime:
        """Move the sync cursor forward to ``server_time``; it never moves back.

        Returns:
            The cursor value after the call.
        """
        async with self._lock(_CURSOR_KEY), self._session() as session:
            current = datetime_from_iso(await _get_state(session, _CURSOR_KEY))
            if current is not None and server_time <= current:
                if server_time < current:
                    logger.debug(
                        "Cursor not moved back from %s to %s",
                        datetime_to_iso(current),
                        datetime_to_iso(server_time),
                    )
                return current
            await _set_state(session, _CURSOR_KEY, datetime_to_iso(server_time))
            return datetime_from_iso(server_time)

    async def get_device_id(self) -> str:
        """Return this replica's device id, creating it on first use."""
        async with self._lock(_DEVICE_KEY), self._session() as session:
            device_id = await _get_state(session, _DEVICE_KEY)
            if device_id is None:
                device_id = uuid.uuid4().hex
                await _set_state(session, _DEVICE_KEY, device_id)
            return device_id

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("ReplicaStore is not open")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


# ------------------------------------------------------------------
# Module-level helpers
# ------------------------------------------------------------------


async def _get_row(session: AsyncSession, local_id: str) -> ReplicaRecord | None:
    stmt = select(ReplicaRecord).where(ReplicaRecord.local_id == local_id)
    return (await session.execute(stmt)).scalar_one_or_none()


async def _require_row(session: AsyncSession, local_id: str) -> ReplicaRecord:
    row = await _get_row(session, local_id)
    if row is None:
        raise KeyError(f"Unknown replica record: {local_id}")
    return row


async def _get_row_by_server_id(
    session: AsyncSession, entity_type: EntityType | str, server_id: int
) -> ReplicaRecord | None:
    stmt = select(ReplicaRecord).where(
        ReplicaRecord.entity_type == str(entity_type),
        ReplicaRecord.server_id == server_id,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _get_state(session: AsyncSession, key: str) -> str | None:
    state = await session.get(ReplicaState, key)
    return state.value if state is not None else None


async def _set_state(session: AsyncSession, key: str, value: str | None) -> None:
    state = await session.get(ReplicaState, key)
    if state is None:
        session.add(ReplicaState(key=key, value=value))
    else:
        state.value = value


def _clean_payload(entity_type: EntityType, data: dict[str, Any]) -> dict[str, Any]:
    """Keep only the payload fields of ``entity_type``."""
    payload = {key: data[key] for key in ENTITY_FIELDS[entity_type] if key in data}
    if "tags" in payload:
        payload["tags"] = normalize_tags(payload["tags"])
    return payload


def _server_payload(entity_type: EntityType, record: dict[str, Any]) -> dict[str, Any]:
    return _clean_payload(entity_type, record)
