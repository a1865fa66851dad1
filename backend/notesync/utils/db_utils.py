"""SQLAlchemy helpers shared by the server database and the client replica."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime that behaves the same on PostgreSQL and SQLite.

    SQLite has no timezone support, so values are stored there as naive UTC
    and re-attached to UTC on load.  Naive values passed in are assumed UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def is_memory_sqlite(url: str) -> bool:
    """Return True for in-memory SQLite URLs (``sqlite+aiosqlite://`` or ``:memory:``)."""
    if not url.startswith("sqlite"):
        return False
    return url.endswith(":memory:") or url.rstrip("/").endswith("sqlite+aiosqlite:")


def create_engine_for_url(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend.

    In-memory SQLite needs a single shared connection, otherwise every
    pooled connection would see its own empty database.
    """
    if is_memory_sqlite(url):
        kwargs.setdefault("poolclass", StaticPool)
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    elif not url.startswith("sqlite"):
        kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url, echo=False, **kwargs)
