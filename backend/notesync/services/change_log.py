"""Append-only change log backing deletion propagation.

Every server-side mutation of a note, folder or tag writes one row to
``sync_log`` in the same transaction as the entity write.  Pulls read only
the ``delete`` rows: create/update deltas come from the entity tables' own
``updated_at`` index, so the log never has to be scanned for those.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.constants import ChangeAction, EntityType
from notesync.models import ChangeLogEntry
from notesync.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


class ChangeLog:
    """Writer/reader for the ``sync_log`` table.

    Args:
        db: An SQLAlchemy async session (caller manages transaction boundaries).
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    def append(
        self,
        user_id: int,
        entity_type: EntityType | str,
        entity_id: int,
        action: ChangeAction | str,
        device_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> ChangeLogEntry:
        """Stage one log row in the current transaction and return it."""
        entry = ChangeLogEntry(
            user_id=user_id,
            entity_type=str(entity_type),
            entity_id=entity_id,
            action=str(action),
            device_id=device_id,
            timestamp=timestamp or utcnow(),
        )
        self._db.add(entry)
        logger.debug(
            "sync_log: user=%s %s %s:%s", user_id, action, entity_type, entity_id
        )
        return entry

    async def deletions_since(
        self, user_id: int, since: datetime | None
    ) -> list[ChangeLogEntry]:
        """Return delete entries for ``user_id`` with ``timestamp > since``.

        ``since=None`` returns the user's full deletion history.
        """
        stmt = select(ChangeLogEntry).where(
            ChangeLogEntry.user_id == user_id,
            ChangeLogEntry.action == ChangeAction.DELETE.value,
        )
        if since is not None:
            stmt = stmt.where(ChangeLogEntry.timestamp > since)
        stmt = stmt.order_by(ChangeLogEntry.timestamp, ChangeLogEntry.id)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())
