"""Tests for the client ReplicaStore state transitions."""

from __future__ import annotations

from datetime import timedelta

import pytest

from notesync.constants import EntityType, ResolutionChoice, SyncStatus
from notesync.utils.datetime_utils import datetime_to_iso, utcnow


def _server_note(note_id: int = 1, title: str = "Server", updated_at=None, **extra) -> dict:
    updated_at = updated_at or utcnow()
    record = {
        "id": note_id,
        "title": title,
        "content": "<p>server</p>",
        "folder_id": None,
        "offline_enabled": False,
        "is_pinned": False,
        "tags": [],
        "created_at": datetime_to_iso(updated_at),
        "updated_at": datetime_to_iso(updated_at),
        "deleted_at": None,
    }
    record.update(extra)
    return record


class TestLocalEdits:
    @pytest.mark.asyncio
    async def test_create_local_is_pending_without_server_id(self, replica_store):
        record = await replica_store.create_local(EntityType.NOTE, {"title": "Draft", "bogus": 1})

        assert record.sync_status == SyncStatus.PENDING
        assert record.server_id is None
        assert record.base_updated_at is None
        assert record.data == {"title": "Draft"}
        assert [r.local_id for r in await replica_store.list_pending()] == [record.local_id]

    @pytest.mark.asyncio
    async def test_mark_dirty_merges_and_bumps_revision(self, replica_store):
        synced = await replica_store.upsert_from_server(EntityType.NOTE, _server_note())
        base = synced.base_updated_at

        edited = await replica_store.mark_dirty(synced.local_id, {"title": "Local", "tags": ["a", "a "]})
        assert edited.sync_status == SyncStatus.PENDING
        assert edited.revision == synced.revision + 1
        assert edited.base_updated_at == base
        assert edited.data["title"] == "Local"
        assert edited.data["content"] == "<p>server</p>"
        assert edited.data["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_mark_dirty_unknown_record(self, replica_store):
        with pytest.raises(KeyError):
            await replica_store.mark_dirty("missing", {"title": "x"})

    @pytest.mark.asyncio
    async def test_mark_deleted_locally(self, replica_store):
        synced = await replica_store.upsert_from_server(EntityType.NOTE, _server_note())
        deleted = await replica_store.mark_deleted_locally(synced.local_id)

        assert deleted.deleted_at is not None
        assert deleted.sync_status == SyncStatus.PENDING
        assert await replica_store.list_records(EntityType.NOTE) == []
        assert len(await replica_store.list_records(EntityType.NOTE, include_deleted=True)) == 1

    @pytest.mark.asyncio
    async def test_purge_only_never_synced_deleted_rows(self, replica_store):
        draft = await replica_store.create_local(EntityType.NOTE, {"title": "Draft"})
        assert await replica_store.purge(draft.local_id) is False

        await replica_store.mark_deleted_locally(draft.local_id)
        assert await replica_store.purge(draft.local_id) is True
        assert await replica_store.get(draft.local_id) is None

        synced = await replica_store.upsert_from_server(EntityType.NOTE, _server_note())
        await replica_store.mark_deleted_locally(synced.local_id)
        assert await replica_store.purge(synced.local_id) is False


class TestServerUpserts:
    @pytest.mark.asyncio
    async def test_insert_as_synced(self, replica_store):
        record = await replica_store.upsert_from_server(EntityType.NOTE, _server_note(7))

        assert record.server_id == 7
        assert record.sync_status == SyncStatus.SYNCED
        assert record.updated_at == record.base_updated_at

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, replica_store):
        note = _server_note(7)
        first = await replica_store.upsert_from_server(EntityType.NOTE, note)
        second = await replica_store.upsert_from_server(EntityType.NOTE, note)

        assert first.local_id == second.local_id
        assert len(await replica_store.list_records()) == 1

    @pytest.mark.asyncio
    async def test_pending_row_is_held(self, replica_store):
        original = await replica_store.upsert_from_server(EntityType.NOTE, _server_note(7))
        await replica_store.mark_dirty(original.local_id, {"title": "Mine"})

        newer = _server_note(7, title="Theirs", updated_at=utcnow() + timedelta(seconds=5))
        held = await replica_store.upsert_from_server(EntityType.NOTE, newer)

        assert held.data["title"] == "Mine"
        assert held.sync_status == SyncStatus.PENDING

    @pytest.mark.asyncio
    async def test_conflict_row_only_refreshes_remote_copy(self, replica_store):
        original = await replica_store.upsert_from_server(EntityType.NOTE, _server_note(7))
        await replica_store.mark_dirty(original.local_id, {"title": "Mine"})
        await replica_store.mark_conflict(original.local_id, _server_note(7, title="Theirs v1"))

        refreshed = await replica_store.upsert_from_server(EntityType.NOTE, _server_note(7, title="Theirs v2"))

        assert refreshed.sync_status == SyncStatus.CONFLICT
        assert refreshed.data["title"] == "Mine"
        assert refreshed.remote_conflict_data["title"] == "Theirs v2"

    @pytest.mark.asyncio
    async def test_older_server_version_is_ignored(self, replica_store):
        now = utcnow()
        await replica_store.upsert_from_server(EntityType.NOTE, _server_note(7, title="New", updated_at=now))
        record = await replica_store.upsert_from_server(
            EntityType.NOTE, _server_note(7, title="Old", updated_at=now - timedelta(minutes=1))
        )
        assert record.data["title"] == "New"


class TestServerDeletions:
    @pytest.mark.asyncio
    async def test_synced_row_is_removed(self, replica_store):
        record = await replica_store.upsert_from_server(EntityType.NOTE, _server_note(7))
        assert await replica_store.apply_server_deletion(EntityType.NOTE, 7) is True
        assert await replica_store.get(record.local_id) is None

    @pytest.mark.asyncio
    async def test_unknown_row_is_ignored(self, replica_store):
        assert await replica_store.apply_server_deletion(EntityType.NOTE, 99) is False

    @pytest.mark.asyncio
    async def test_pending_row_becomes_conflict(self, replica_store):
        record = await replica_store.upsert_from_server(EntityType.NOTE, _server_note(7))
        await replica_store.mark_dirty(record.local_id, {"title": "Keep me"})

        await replica_store.apply_server_deletion(EntityType.NOTE, 7)
        kept = await replica_store.get(record.local_id)

        assert kept.sync_status == SyncStatus.CONFLICT
        assert kept.remotely_deleted is True
        assert kept.data["title"] == "Keep me"


class TestAcknowledgements:
    @pytest.mark.asyncio
    async def test_acknowledge_create(self, replica_store):
        draft = await replica_store.create_local(EntityType.NOTE, {"title": "Draft"})
        server = _server_note(11, title="Draft")

        acked = await replica_store.acknowledge_push(draft.local_id, server, draft.revision)

        assert acked.server_id == 11
        assert acked.sync_status == SyncStatus.SYNCED
        assert acked.updated_at == acked.base_updated_at
        assert acked.local_id == draft.local_id
        assert await replica_store.list_pending() == []

    @pytest.mark.asyncio
    async def test_edit_during_push_stays_pending(self, replica_store):
        draft = await replica_store.create_local(EntityType.NOTE, {"title": "v1"})
        pushed_revision = draft.revision
        await replica_store.mark_dirty(draft.local_id, {"title": "v2"})

        acked = await replica_store.acknowledge_push(
            draft.local_id, _server_note(11, title="v1"), pushed_revision
        )

        assert acked.server_id == 11
        assert acked.sync_status == SyncStatus.PENDING
        assert acked.data["title"] == "v2"
        assert acked.base_updated_at is not None

    @pytest.mark.asyncio
    async def test_acknowledge_delete(self, replica_store):
        record = await replica_store.upsert_from_server(EntityType.NOTE, _server_note(7))
        await replica_store.mark_deleted_locally(record.local_id)
        assert await replica_store.acknowledge_delete(record.local_id) is True
        assert await replica_store.get(record.local_id) is None


class TestConflictResolution:
    async def _conflicted(self, store, server_copy):
        record = await store.upsert_from_server(EntityType.NOTE, _server_note(7, title="Base"))
        await store.mark_dirty(record.local_id, {"title": "Local"})
        await store.mark_conflict(record.local_id, server_copy)
        return record.local_id

    @pytest.mark.asyncio
    async def test_keep_server(self, replica_store):
        remote = _server_note(7, title="Remote", updated_at=utcnow() + timedelta(seconds=3))
        local_id = await self._conflicted(replica_store, remote)

        resolved = await replica_store.resolve_conflict(local_id, ResolutionChoice.KEEP_SERVER)

        assert resolved.sync_status == SyncStatus.SYNCED
        assert resolved.data["title"] == "Remote"
        assert resolved.remote_conflict_data is None
        assert datetime_to_iso(resolved.base_updated_at) == remote["updated_at"]

    @pytest.mark.asyncio
    async def test_keep_local_rebases_on_remote(self, replica_store):
        remote = _server_note(7, title="Remote", updated_at=utcnow() + timedelta(seconds=3))
        local_id = await self._conflicted(replica_store, remote)

        resolved = await replica_store.resolve_conflict(local_id, "keep_local")

        assert resolved.sync_status == SyncStatus.PENDING
        assert resolved.data["title"] == "Local"
        assert datetime_to_iso(resolved.base_updated_at) == remote["updated_at"]

    @pytest.mark.asyncio
    async def test_keep_server_after_remote_delete_drops_row(self, replica_store):
        local_id = await self._conflicted(replica_store, None)
        assert await replica_store.resolve_conflict(local_id, ResolutionChoice.KEEP_SERVER) is None
        assert await replica_store.get(local_id) is None

    @pytest.mark.asyncio
    async def test_keep_local_after_remote_delete_recreates(self, replica_store):
        local_id = await self._conflicted(replica_store, None)

        resolved = await replica_store.resolve_conflict(local_id, ResolutionChoice.KEEP_LOCAL)

        assert resolved.local_id != local_id
        assert resolved.server_id is None
        assert resolved.sync_status == SyncStatus.PENDING
        assert resolved.data["title"] == "Local"
        assert await replica_store.get(local_id) is None

    @pytest.mark.asyncio
    async def test_edit_keeps_conflict_status(self, replica_store):
        local_id = await self._conflicted(replica_store, _server_note(7, title="Remote"))
        edited = await replica_store.mark_dirty(local_id, {"title": "Local 2"})
        assert edited.sync_status == SyncStatus.CONFLICT
        assert await replica_store.list_pending() == []

    @pytest.mark.asyncio
    async def test_resolve_requires_conflict(self, replica_store):
        record = await replica_store.create_local(EntityType.NOTE, {"title": "x"})
        with pytest.raises(ValueError):
            await replica_store.resolve_conflict(record.local_id, ResolutionChoice.KEEP_LOCAL)


class TestReplicaState:
    @pytest.mark.asyncio
    async def test_cursor_never_regresses(self, replica_store):
        assert await replica_store.get_cursor() is None
        now = utcnow()

        assert await replica_store.advance_cursor(now) == now
        assert await replica_store.advance_cursor(now - timedelta(minutes=5)) == now
        assert await replica_store.get_cursor() == now

        later = now + timedelta(seconds=1)
        await replica_store.advance_cursor(later)
        assert await replica_store.get_cursor() == later

    @pytest.mark.asyncio
    async def test_device_id_is_stable(self, replica_store):
        first = await replica_store.get_device_id()
        assert first
        assert await replica_store.get_device_id() == first

    @pytest.mark.asyncio
    async def test_clear(self, replica_store):
        await replica_store.create_local(EntityType.FOLDER, {"name": "x"})
        await replica_store.advance_cursor(utcnow())
        await replica_store.clear()

        assert await replica_store.list_records(include_deleted=True) == []
        assert await replica_store.get_cursor() is None
