"""Per-login wiring of replica store, API client and coordinator.

Usage::

    async with SyncSession(token) as session:
        note = await session.store.create_local("note", {"title": "Draft"})
        await session.coordinator.request_sync()
"""

from __future__ import annotations

import logging

import httpx

from notesync.client.api_client import SyncApiClient
from notesync.client.coordinator import SyncCoordinator, SyncEvent
from notesync.client.replica_store import ReplicaStore

logger = logging.getLogger(__name__)


class SyncSession:
    """Everything one authenticated user needs to sync a replica.

    Args:
        token: Bearer token for the sync API.
        base_url: API root.  Defaults to ``SYNC_SERVER_URL``.
        replica_url: Replica database URL.  Defaults to ``REPLICA_DATABASE_URL``.
        interval: Periodic sync interval; ``0`` disables the timer.
        transport: Optional httpx transport for the API client.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str | None = None,
        replica_url: str | None = None,
        interval: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = ReplicaStore(replica_url)
        self.api = SyncApiClient(base_url, token, transport=transport)
        self.coordinator = SyncCoordinator(self.store, self.api, interval=interval)
        self.auth_required = False
        self.coordinator.add_listener(self._on_event)

    async def open(self, *, start: bool = True) -> SyncSession:
        """Open the replica and, unless ``start`` is false, run the first cycle."""
        await self.store.open()
        if start:
            await self.coordinator.start()
        return self

    async def close(self) -> None:
        await self.coordinator.stop()
        await self.api.close()
        await self.store.close()

    async def logout(self) -> None:
        """Stop syncing and wipe the local replica."""
        await self.coordinator.stop()
        await self.store.clear()
        await self.close()
        logger.info("Sync session logged out")

    def update_token(self, token: str) -> None:
        self.api.set_token(token)
        self.auth_required = False

    async def __aenter__(self) -> SyncSession:
        return await self.open()

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _on_event(self, event: SyncEvent) -> None:
        if event.type == "sync_error" and event.data.get("auth_required"):
            logger.warning("Sync credentials rejected; stopping periodic sync")
            self.auth_required = True
            await self.coordinator.stop()
