"""Tests for SyncCoordinator against a real replica and a mocked API client.

The API client is an ``AsyncMock`` so each test controls exactly what the
server answers (or how it fails).
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from notesync.client.api_client import AuthFailure, NetworkFailure, SyncApiError
from notesync.client.coordinator import SyncCoordinator
from notesync.constants import CoordinatorState, EntityType, SyncStatus
from notesync.utils.datetime_utils import datetime_from_iso, datetime_to_iso, utcnow

SERVER_TIME = "2030-01-01T00:00:00+00:00"


def _note(note_id: int, title: str = "Server", **extra) -> dict:
    now = datetime_to_iso(utcnow())
    record = {
        "id": note_id,
        "title": title,
        "content": "",
        "folder_id": None,
        "offline_enabled": False,
        "is_pinned": False,
        "tags": [],
        "created_at": now,
        "updated_at": now,
        "deleted_at": None,
    }
    record.update(extra)
    return record


def _empty_pull(**overrides) -> dict:
    data = {"notes": [], "folders": [], "tags": [], "deletions": [], "serverTime": SERVER_TIME}
    data.update(overrides)
    return data


def _mock_api(**pull_overrides) -> AsyncMock:
    api = AsyncMock()
    api.push.return_value = {"results": {"notes": [], "folders": [], "conflicts": [], "errors": []}}
    api.pull.return_value = _empty_pull(**pull_overrides)
    api.offline_notes.return_value = []
    return api


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_nothing_pending_skips_push(self, replica_store):
        api = _mock_api(notes=[_note(1)])
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        result = await coordinator.sync()

        assert result.success is True
        assert result.pulled == 1
        api.push.assert_not_called()
        api.pull.assert_awaited_once()
        assert coordinator.state == CoordinatorState.IDLE
        assert await replica_store.get_cursor() == datetime_from_iso(SERVER_TIME)

    @pytest.mark.asyncio
    async def test_push_results_are_applied(self, replica_store):
        draft = await replica_store.create_local(EntityType.NOTE, {"title": "Draft"})
        api = _mock_api()
        api.push.return_value = {
            "results": {
                "notes": [
                    {"local_id": draft.local_id, "id": 42, "status": "created", "server": _note(42, "Draft")}
                ],
                "folders": [],
                "conflicts": [],
                "errors": [],
            }
        }
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        result = await coordinator.sync()

        assert result.success is True
        assert result.pushed == 1
        assert result.created == 1
        record = await replica_store.get(draft.local_id)
        assert record.server_id == 42
        assert record.sync_status == SyncStatus.SYNCED

        notes, folders, device_id = api.push.await_args.args
        assert notes == [{"title": "Draft", "localId": draft.local_id, "_isNew": True}]
        assert folders == []
        assert device_id == await replica_store.get_device_id()

    @pytest.mark.asyncio
    async def test_second_pull_uses_cursor(self, replica_store):
        api = _mock_api()
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        await coordinator.sync()
        await coordinator.sync()

        first_cursor = api.pull.await_args_list[0].args[0]
        second_cursor = api.pull.await_args_list[1].args[0]
        assert first_cursor is None
        assert second_cursor == datetime_from_iso(SERVER_TIME)

    @pytest.mark.asyncio
    async def test_events(self, replica_store):
        events = []
        coordinator = SyncCoordinator(replica_store, _mock_api(), interval=0)
        coordinator.add_listener(lambda event: events.append(event.type))

        await coordinator.sync()

        assert events == ["sync_start", "sync_complete"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_cycle(self, replica_store):
        coordinator = SyncCoordinator(replica_store, _mock_api(), interval=0)

        def broken(event):
            raise RuntimeError("listener bug")

        coordinator.add_listener(broken)
        result = await coordinator.sync()
        assert result.success is True


class TestConflicts:
    @pytest.mark.asyncio
    async def test_conflict_result_marks_record(self, replica_store):
        record = await replica_store.upsert_from_server(EntityType.NOTE, _note(5, "Base"))
        await replica_store.mark_dirty(record.local_id, {"title": "Mine"})
        server_version = _note(5, "Theirs")
        api = _mock_api()
        api.push.return_value = {
            "results": {
                "notes": [],
                "folders": [],
                "conflicts": [{"entity_type": "note", "entity_id": 5, "server": server_version}],
                "errors": [],
            }
        }
        events = []
        coordinator = SyncCoordinator(replica_store, api, interval=0)
        coordinator.add_listener(events.append)

        result = await coordinator.sync()

        assert result.success is True
        assert [c["local_id"] for c in result.conflicts] == [record.local_id]
        stored = await replica_store.get(record.local_id)
        assert stored.sync_status == SyncStatus.CONFLICT
        assert stored.data["title"] == "Mine"
        assert stored.remote_conflict_data["title"] == "Theirs"
        assert "conflict" in [e.type for e in events]

    @pytest.mark.asyncio
    async def test_remote_deletion_of_edited_record_is_surfaced(self, replica_store):
        record = await replica_store.upsert_from_server(EntityType.NOTE, _note(5))
        await replica_store.mark_dirty(record.local_id, {"title": "Mine"})
        api = _mock_api(deletions=[{"entityType": "note", "entityId": 5, "timestamp": SERVER_TIME}])
        # The push of the edit is answered with a deletion conflict
        api.push.return_value = {
            "results": {
                "notes": [],
                "folders": [],
                "conflicts": [{"entity_type": "note", "entity_id": 5, "server": None}],
                "errors": [],
            }
        }
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        result = await coordinator.sync()

        assert len(result.conflicts) == 1
        stored = await replica_store.get(record.local_id)
        assert stored.sync_status == SyncStatus.CONFLICT
        assert stored.remotely_deleted is True

    @pytest.mark.asyncio
    async def test_rejected_items_stay_pending(self, replica_store):
        draft = await replica_store.create_local(EntityType.NOTE, {"title": "Bad"})
        api = _mock_api()
        api.push.return_value = {
            "results": {
                "notes": [],
                "folders": [],
                "conflicts": [],
                "errors": [{"entity_type": "note", "local_id": draft.local_id, "id": None, "reason": "nope"}],
            }
        }
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        result = await coordinator.sync()

        assert result.success is True
        assert result.rejected[0]["reason"] == "nope"
        assert (await replica_store.get(draft.local_id)).sync_status == SyncStatus.PENDING


class TestFailures:
    @pytest.mark.asyncio
    async def test_network_failure_keeps_cursor_and_pending(self, replica_store):
        draft = await replica_store.create_local(EntityType.NOTE, {"title": "Offline edit"})
        api = _mock_api()
        api.push.side_effect = NetworkFailure(None, "connection refused")
        events = []
        coordinator = SyncCoordinator(replica_store, api, interval=0)
        coordinator.add_listener(events.append)

        result = await coordinator.sync()

        assert result.success is False
        assert result.error == "connection refused"
        assert result.auth_required is False
        api.pull.assert_not_called()
        assert await replica_store.get_cursor() is None
        assert (await replica_store.get(draft.local_id)).sync_status == SyncStatus.PENDING
        assert coordinator.state == CoordinatorState.IDLE
        assert events[-1].type == "sync_error"

    @pytest.mark.asyncio
    async def test_pull_failure_does_not_advance_cursor(self, replica_store):
        api = _mock_api()
        api.pull.side_effect = NetworkFailure(502)
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        result = await coordinator.sync()

        assert result.success is False
        assert await replica_store.get_cursor() is None

    @pytest.mark.asyncio
    async def test_auth_failure_is_flagged(self, replica_store):
        api = _mock_api()
        api.pull.side_effect = AuthFailure(401)
        events = []
        coordinator = SyncCoordinator(replica_store, api, interval=0)
        coordinator.add_listener(events.append)

        result = await coordinator.sync()

        assert result.auth_required is True
        assert events[-1].type == "sync_error"
        assert events[-1].data["auth_required"] is True

    @pytest.mark.asyncio
    async def test_cache_failure_does_not_fail_cycle(self, replica_store):
        api = _mock_api()
        api.offline_notes.side_effect = SyncApiError(500, "cache down")
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        result = await coordinator.sync()

        assert result.success is True
        assert result.cache_error == "cache down"
        assert await replica_store.get_cursor() == datetime_from_iso(SERVER_TIME)

    @pytest.mark.asyncio
    async def test_cache_auth_failure_fails_cycle(self, replica_store):
        api = _mock_api()
        api.offline_notes.side_effect = AuthFailure(403)
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        result = await coordinator.sync()

        assert result.success is False
        assert result.auth_required is True

    @pytest.mark.asyncio
    async def test_missing_server_time_is_an_error(self, replica_store):
        api = _mock_api()
        api.pull.return_value = {"notes": [], "deletions": []}
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        result = await coordinator.sync()

        assert result.success is False
        assert await replica_store.get_cursor() is None


class TestTriggers:
    @pytest.mark.asyncio
    async def test_offline_skips(self, replica_store):
        api = _mock_api()
        coordinator = SyncCoordinator(replica_store, api, interval=0, online=False)

        result = await coordinator.sync()

        assert result.skipped is True
        assert result.reason == "offline"
        api.pull.assert_not_called()

    @pytest.mark.asyncio
    async def test_coming_online_triggers_sync(self, replica_store):
        api = _mock_api()
        events = []
        coordinator = SyncCoordinator(replica_store, api, interval=0, online=False)
        coordinator.add_listener(lambda event: events.append(event.type))

        result = await coordinator.set_online(True)

        assert result.success is True
        assert events[0] == "online"
        assert await coordinator.set_online(True) is None
        await coordinator.set_online(False)
        assert events[-1] == "offline"

    @pytest.mark.asyncio
    async def test_single_flight(self, replica_store):
        release = asyncio.Event()
        api = _mock_api()

        async def slow_pull(*args, **kwargs):
            await release.wait()
            return _empty_pull()

        api.pull.side_effect = slow_pull
        coordinator = SyncCoordinator(replica_store, api, interval=0)

        first = asyncio.create_task(coordinator.sync())
        while coordinator.state != CoordinatorState.PULLING:
            await asyncio.sleep(0)
        second = await coordinator.request_sync()
        release.set()
        first_result = await first

        assert second.skipped is True
        assert second.reason == "in_progress"
        assert first_result.success is True
        assert api.pull.await_count == 1

    @pytest.mark.asyncio
    async def test_start_runs_a_cycle_and_periodic_timer(self, replica_store):
        api = _mock_api()
        coordinator = SyncCoordinator(replica_store, api, interval=0.01)

        result = await coordinator.start()
        assert result.success is True
        for _ in range(200):
            if api.pull.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        await coordinator.stop()

        assert api.pull.await_count >= 2
