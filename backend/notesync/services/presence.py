"""Best-effort presence relay keyed by note id.

Independent of the sync protocol: nothing is persisted and a slow subscriber
only loses its own messages.  Each subscriber owns a bounded
``asyncio.Queue``; when it is full the newest message is dropped for that
subscriber.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from notesync.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PresenceSubscription:
    """One subscriber's view of a note channel."""

    note_id: int
    user_id: int
    queue: asyncio.Queue = field(repr=False)
    dropped: int = 0


class PresenceHub:
    """In-process pub/sub of presence messages, one channel per note."""

    def __init__(self, queue_size: int | None = None) -> None:
        self._queue_size = queue_size or get_settings().PRESENCE_QUEUE_SIZE
        self._channels: dict[int, set[PresenceSubscription]] = {}

    def subscribe(self, note_id: int, user_id: int) -> PresenceSubscription:
        sub = PresenceSubscription(note_id, user_id, asyncio.Queue(maxsize=self._queue_size))
        self._channels.setdefault(note_id, set()).add(sub)
        logger.debug("Presence: user %s joined note %s", user_id, note_id)
        return sub

    def unsubscribe(self, sub: PresenceSubscription) -> None:
        subs = self._channels.get(sub.note_id)
        if not subs:
            return
        subs.discard(sub)
        if not subs:
            del self._channels[sub.note_id]
        logger.debug("Presence: user %s left note %s", sub.user_id, sub.note_id)

    def publish(
        self,
        note_id: int,
        message: dict[str, Any],
        *,
        sender: PresenceSubscription | None = None,
    ) -> int:
        """Fan ``message`` out to every subscriber of ``note_id`` except ``sender``.

        Returns:
            Number of subscribers the message was queued for.
        """
        delivered = 0
        for sub in list(self._channels.get(note_id, ())):
            if sub is sender:
                continue
            try:
                sub.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.debug(
                    "Presence: queue full for user %s on note %s, dropped message",
                    sub.user_id,
                    note_id,
                )
        return delivered

    def participants(self, note_id: int) -> list[int]:
        """Return the distinct user ids currently subscribed to ``note_id``."""
        return sorted({sub.user_id for sub in self._channels.get(note_id, ())})


_hub: PresenceHub | None = None


def get_presence_hub() -> PresenceHub:
    """Return the process-wide hub (created lazily)."""
    global _hub
    if _hub is None:
        _hub = PresenceHub()
    return _hub
