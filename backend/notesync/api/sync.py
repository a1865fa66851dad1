"""Sync API endpoints used by offline-first clients.

Provides:
- ``POST /sync/pull``    -- Delta of notes, folders, tags and deletions since a cursor
- ``POST /sync/push``    -- Apply a batch of client changes, item by item
- ``GET  /sync/offline`` -- Full content of notes flagged for offline use

All endpoints require JWT authentication via the ``get_current_user``
dependency; every query is scoped to the token's ``user_id``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.config import get_settings
from notesync.constants import EntityType
from notesync.database import get_db
from notesync.services.auth_service import get_current_user
from notesync.services.sync_endpoint import (
    Conflict,
    Created,
    Deleted,
    PushOutcome,
    Rejected,
    SyncEndpoint,
    Updated,
)
from notesync.utils.datetime_utils import datetime_to_iso

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class PullRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_sync_at: datetime | None = Field(default=None, alias="lastSyncAt")
    device_id: str | None = Field(default=None, alias="deviceId", max_length=255)


class PushRequest(BaseModel):
    """Client batch.  Items are validated one at a time by the endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    notes: list[Any] = Field(default_factory=list)
    folders: list[Any] = Field(default_factory=list)
    device_id: str | None = Field(default=None, alias="deviceId", max_length=255)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class DeletionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_type: str = Field(alias="entityType")
    entity_id: int = Field(alias="entityId")
    timestamp: str


class PullResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notes: list[dict[str, Any]]
    folders: list[dict[str, Any]]
    tags: list[dict[str, Any]]
    deletions: list[DeletionResponse]
    server_time: str = Field(alias="serverTime")


class PushItemResponse(BaseModel):
    """Outcome of one accepted item."""

    local_id: str | None = None
    id: int
    status: str  # "created" | "updated" | "deleted"
    replayed: bool = False
    server: dict[str, Any] | None = None


class ConflictResponse(BaseModel):
    entity_type: str
    entity_id: int
    note_id: int | None = None
    local_id: str | None = None
    local_title: str | None = None
    local_content: str | None = None
    local_name: str | None = None
    server: dict[str, Any] | None = None


class RejectedResponse(BaseModel):
    entity_type: str
    local_id: str | None = None
    id: int | None = None
    reason: str


class PushResults(BaseModel):
    notes: list[PushItemResponse] = Field(default_factory=list)
    folders: list[PushItemResponse] = Field(default_factory=list)
    conflicts: list[ConflictResponse] = Field(default_factory=list)
    errors: list[RejectedResponse] = Field(default_factory=list)


class PushResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    results: PushResults
    server_time: str = Field(alias="serverTime")


class OfflineResponse(BaseModel):
    notes: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/pull", response_model=PullResponse)
async def pull_changes(
    request: PullRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PullResponse:
    """Return everything that changed for the caller since ``lastSyncAt``."""
    result = await SyncEndpoint(db).pull(current_user["user_id"], request.last_sync_at)
    return PullResponse(
        notes=result.notes,
        folders=result.folders,
        tags=result.tags,
        deletions=[
            DeletionResponse(
                entity_type=d["entity_type"],
                entity_id=d["entity_id"],
                timestamp=d["timestamp"],
            )
            for d in result.deletions
        ],
        server_time=datetime_to_iso(result.server_time),
    )


@router.post("/push", response_model=PushResponse)
async def push_changes(
    request: PushRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PushResponse:
    """Apply a batch of client changes.

    Each item is committed on its own; conflicts and rejected items are
    reported alongside the accepted ones.
    """
    max_items = get_settings().SYNC_PUSH_MAX_ITEMS
    total = len(request.notes) + len(request.folders)
    if total > max_items:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Push batch of {total} items exceeds the limit of {max_items}",
        )

    outcome = await SyncEndpoint(db).push(
        current_user["user_id"],
        notes=request.notes,
        folders=request.folders,
        device_id=request.device_id,
    )
    return PushResponse(results=_to_push_results(outcome), server_time=datetime_to_iso(outcome.server_time))


@router.get("/offline", response_model=OfflineResponse)
async def offline_notes(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> OfflineResponse:
    """Return every note the caller marked as available offline."""
    notes = await SyncEndpoint(db).offline_notes(current_user["user_id"])
    return OfflineResponse(notes=notes)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_push_results(outcome: PushOutcome) -> PushResults:
    results = PushResults()
    for item in outcome.results:
        bucket = results.notes if item.entity_type == EntityType.NOTE else results.folders
        if isinstance(item, (Created, Updated)):
            bucket.append(
                PushItemResponse(
                    local_id=item.local_id,
                    id=item.record["id"],
                    status="created" if isinstance(item, Created) else "updated",
                    replayed=isinstance(item, Created) and item.replayed,
                    server=item.record,
                )
            )
        elif isinstance(item, Deleted):
            bucket.append(PushItemResponse(local_id=item.local_id, id=item.entity_id, status="deleted"))
        elif isinstance(item, Conflict):
            results.conflicts.append(
                ConflictResponse(
                    entity_type=str(item.entity_type),
                    entity_id=item.entity_id,
                    note_id=item.entity_id if item.entity_type == EntityType.NOTE else None,
                    local_id=item.local_id,
                    local_title=item.local.get("title"),
                    local_content=item.local.get("content"),
                    local_name=item.local.get("name"),
                    server=item.server,
                )
            )
        elif isinstance(item, Rejected):
            results.errors.append(
                RejectedResponse(
                    entity_type=str(item.entity_type),
                    local_id=item.local_id,
                    id=item.entity_id,
                    reason=item.reason,
                )
            )
    return results
