"""Client sync cycle: push, then pull, then refresh the offline cache.

State machine::

    idle -> pushing -> pulling -> refreshing_cache -> idle
                 \\________\\______________\\-> error -> idle

Only one cycle runs at a time.  A trigger arriving while a cycle is running,
or while the client is offline, returns a skipped :class:`SyncResult` right
away.  The coordinator never raises out of a cycle: failures are reported in
the result and through ``sync_error`` events.

Failure handling:
- ``NetworkFailure`` / ``SyncApiError`` -- the cycle stops; the cursor is
  unchanged and unacknowledged records stay ``pending`` for the next cycle.
- ``AuthFailure`` -- the cycle stops and ``auth_required`` is reported so the
  session can ask the user to sign in again.
- A failed offline-cache refresh is logged and noted in the result; the
  delta sync already completed, so the cycle still succeeds.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from notesync.client.api_client import AuthFailure, SyncApiClient, SyncApiError
from notesync.client.change_queue import ChangeQueue, PushBatch
from notesync.client.replica_store import ReplicaStore
from notesync.config import get_settings
from notesync.constants import CoordinatorState, EntityType
from notesync.utils.datetime_utils import datetime_from_iso, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Summary of one sync cycle."""

    success: bool = False
    skipped: bool = False
    reason: str | None = None  # "offline" | "in_progress" when skipped
    pushed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    rejected: list[dict[str, Any]] = field(default_factory=list)
    pulled: int = 0
    deletions: int = 0
    cached: int = 0
    cache_error: str | None = None
    error: str | None = None
    auth_required: bool = False
    synced_at: datetime | None = None


@dataclass(frozen=True)
class SyncEvent:
    """Notification delivered to coordinator listeners.

    ``type`` is one of ``sync_start``, ``sync_complete``, ``sync_error``,
    ``conflict``, ``online``, ``offline``.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[SyncEvent], Any]


class SyncCoordinator:
    """Drives sync cycles for one replica.

    Args:
        store: The session's replica store (opened by the caller).
        api: Transport to the sync API.
        interval: Seconds between periodic cycles once started; ``0``
            disables the timer.  Defaults to ``SYNC_INTERVAL_SECONDS``.
        online: Initial connectivity state.
    """

    def __init__(
        self,
        store: ReplicaStore,
        api: SyncApiClient,
        *,
        interval: float | None = None,
        online: bool = True,
    ) -> None:
        self._store = store
        self._api = api
        self._queue = ChangeQueue(store)
        self._interval = interval if interval is not None else get_settings().SYNC_INTERVAL_SECONDS
        self._online = online
        self._state = CoordinatorState.IDLE
        self._listeners: list[Listener] = []
        self._periodic: asyncio.Task | None = None
        self.last_result: SyncResult | None = None

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._online

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` (sync or async); returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def _emit(self, event_type: str, **data: Any) -> None:
        event = SyncEvent(event_type, data)
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Sync listener failed on %s event", event_type)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def start(self) -> SyncResult:
        """Run the start-up cycle and begin the periodic timer."""
        if self._interval > 0 and self._periodic is None:
            self._periodic = asyncio.create_task(self._run_periodic())
        return await self.sync()

    async def stop(self) -> None:
        task, self._periodic = self._periodic, None
        if task is None:
            return
        task.cancel()
        if task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def set_online(self, online: bool) -> SyncResult | None:
        """Record a connectivity change; coming back online triggers a cycle."""
        if online == self._online:
            return None
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        await self._emit("online" if online else "offline")
        if online:
            return await self.sync()
        return None

    async def request_sync(self) -> SyncResult:
        """Explicit user-requested cycle."""
        return await self.sync()

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.sync()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def sync(self) -> SyncResult:
        """Run one push/pull/cache cycle unless offline or already running."""
        if not self._online:
            return SyncResult(skipped=True, reason="offline")
        if self._state != CoordinatorState.IDLE:
            logger.debug("Sync already in progress (%s), skipping", self._state)
            return SyncResult(skipped=True, reason="in_progress")

        self._state = CoordinatorState.PUSHING
        result = SyncResult()
        await self._emit("sync_start")

        try:
            await self._push(result)
            self._state = CoordinatorState.PULLING
            await self._pull(result)
            self._state = CoordinatorState.REFRESHING_CACHE
            await self._refresh_cache(result)
        except asyncio.CancelledError:
            self._state = CoordinatorState.IDLE
            raise
        except AuthFailure as exc:
            result.error = exc.message
            result.auth_required = True
        except SyncApiError as exc:
            result.error = exc.message
        except Exception as exc:
            logger.exception("Sync cycle failed")
            result.error = str(exc) or exc.__class__.__name__
        else:
            result.success = True
            result.synced_at = utcnow()

        if result.success:
            self._state = CoordinatorState.IDLE
            logger.info(
                "Sync complete: pushed=%d conflicts=%d rejected=%d pulled=%d deletions=%d cached=%d",
                result.pushed,
                len(result.conflicts),
                len(result.rejected),
                result.pulled,
                result.deletions,
                result.cached,
            )
            if result.conflicts:
                await self._emit("conflict", conflicts=result.conflicts)
            await self._emit("sync_complete", result=asdict(result))
        else:
            self._state = CoordinatorState.ERROR
            logger.warning("Sync failed: %s", result.error)
            if result.conflicts:
                await self._emit("conflict", conflicts=result.conflicts)
            await self._emit("sync_error", error=result.error, auth_required=result.auth_required)
            self._state = CoordinatorState.IDLE

        self.last_result = result
        return result

    async def _push(self, result: SyncResult) -> None:
        batch = await self._queue.build_batch()
        if batch.is_empty:
            return

        device_id = await self._store.get_device_id()
        response = await self._api.push(batch.notes, batch.folders, device_id)
        result.pushed = len(batch)
        await self._apply_push_results(batch, response.get("results") or {}, result)

    async def _apply_push_results(
        self, batch: PushBatch, results: dict[str, Any], result: SyncResult
    ) -> None:
        for entity_type, key in ((EntityType.NOTE, "notes"), (EntityType.FOLDER, "folders")):
            for item in results.get(key) or []:
                entry = batch.find(entity_type, local_id=item.get("local_id"), server_id=item.get("id"))
                if entry is None:
                    logger.warning("Push result for unknown %s %s", entity_type, item.get("id"))
                    continue

                status = item.get("status")
                server = item.get("server") or {}
                if status == "deleted" or server.get("deleted_at"):
                    await self._store.acknowledge_delete(entry.local_id)
                    result.deleted += 1
                elif status in ("created", "updated"):
                    await self._store.acknowledge_push(entry.local_id, server, entry.revision)
                    if status == "created":
                        result.created += 1
                    else:
                        result.updated += 1
                else:
                    logger.warning("Unknown push status %r for %s", status, entry.local_id)

        for conflict in results.get("conflicts") or []:
            entry = batch.find(
                conflict.get("entity_type", EntityType.NOTE),
                local_id=conflict.get("local_id"),
                server_id=conflict.get("entity_id"),
            )
            if entry is None:
                logger.warning("Conflict for unknown entity %s", conflict.get("entity_id"))
                continue
            await self._store.mark_conflict(entry.local_id, conflict.get("server"))
            result.conflicts.append(
                {
                    "local_id": entry.local_id,
                    "entity_type": entry.entity_type.value,
                    "entity_id": conflict.get("entity_id"),
                    "server": conflict.get("server"),
                }
            )

        for error in results.get("errors") or []:
            logger.warning(
                "Server rejected %s item (local_id=%s, id=%s): %s",
                error.get("entity_type"),
                error.get("local_id"),
                error.get("id"),
                error.get("reason"),
            )
            result.rejected.append(dict(error))

    async def _pull(self, result: SyncResult) -> None:
        cursor = await self._store.get_cursor()
        device_id = await self._store.get_device_id()
        delta = await self._api.pull(cursor, device_id)

        server_time = datetime_from_iso(delta.get("serverTime"))
        if server_time is None:
            raise SyncApiError(None, "Pull response has no serverTime")

        for entity_type, key in (
            (EntityType.FOLDER, "folders"),
            (EntityType.TAG, "tags"),
            (EntityType.NOTE, "notes"),
        ):
            for record in delta.get(key) or []:
                await self._store.upsert_from_server(entity_type, record)
                result.pulled += 1

        for deletion in delta.get("deletions") or []:
            try:
                entity_type = EntityType(deletion.get("entityType"))
            except ValueError:
                logger.warning("Ignoring deletion of unknown entity type %r", deletion.get("entityType"))
                continue
            entity_id = deletion["entityId"]
            if not await self._store.apply_server_deletion(entity_type, entity_id):
                continue
            result.deletions += 1
            kept = await self._store.get_by_server_id(entity_type, entity_id)
            if kept is not None and kept.remotely_deleted and not any(
                c["local_id"] == kept.local_id for c in result.conflicts
            ):
                # Local edits outlived a remote deletion
                result.conflicts.append(
                    {
                        "local_id": kept.local_id,
                        "entity_type": kept.entity_type,
                        "entity_id": entity_id,
                        "server": None,
                    }
                )

        await self._store.advance_cursor(server_time)

    async def _refresh_cache(self, result: SyncResult) -> None:
        try:
            notes = await self._api.offline_notes()
        except AuthFailure:
            raise
        except SyncApiError as exc:
            logger.warning("Offline cache refresh failed: %s", exc.message)
            result.cache_error = exc.message
            return

        for note in notes:
            await self._store.upsert_from_server(EntityType.NOTE, note)
        result.cached = len(notes)
