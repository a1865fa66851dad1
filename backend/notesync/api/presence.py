"""Presence relay over WebSocket.

``WS /ws/notes/{note_id}?token=<jwt>`` -- every JSON object a client sends is
stamped with its ``user_id`` and relayed to the other clients viewing the
same note.  Delivery is best effort (see :mod:`notesync.services.presence`).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from notesync.services.auth_service import user_from_token
from notesync.services.presence import PresenceHub, PresenceSubscription, get_presence_hub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["presence"])


@router.websocket("/ws/notes/{note_id}")
async def note_presence(
    websocket: WebSocket,
    note_id: int,
    token: str = Query(...),
    hub: PresenceHub = Depends(get_presence_hub),
) -> None:
    user = user_from_token(token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    user_id = user["user_id"]
    sub = hub.subscribe(note_id, user_id)
    hub.publish(
        note_id,
        {"type": "join", "user_id": user_id, "note_id": note_id},
        sender=sub,
    )
    await websocket.send_json(
        {"type": "participants", "note_id": note_id, "user_ids": hub.participants(note_id)}
    )
    forwarder = asyncio.create_task(_forward(websocket, sub))

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                logger.debug("Presence: ignoring non-JSON frame from user %s", user_id)
                continue
            if not isinstance(message, dict):
                continue
            message["user_id"] = user_id
            message["note_id"] = note_id
            hub.publish(note_id, message, sender=sub)
    except WebSocketDisconnect:
        pass
    finally:
        forwarder.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await forwarder
        hub.unsubscribe(sub)
        hub.publish(note_id, {"type": "leave", "user_id": user_id, "note_id": note_id})


async def _forward(websocket: WebSocket, sub: PresenceSubscription) -> None:
    while True:
        message = await sub.queue.get()
        await websocket.send_json(message)
