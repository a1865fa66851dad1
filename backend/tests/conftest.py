import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment variables before importing notesync modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only")
os.environ.setdefault("SYNC_INTERVAL_SECONDS", "0")

MEMORY_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_db() -> AsyncGenerator[AsyncSession, None]:
    """Provide an async session on a fresh in-memory server database.

    Uses a per-test engine to avoid event loop issues.
    """
    from notesync.database import Base
    from notesync.utils.db_utils import create_engine_for_url
    import notesync.models  # noqa: F401 - Import to register models with Base

    engine = create_engine_for_url(MEMORY_URL)
    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_factory() as session:
        yield session
        await session.rollback()

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_app(test_db: AsyncSession):
    """Provide the FastAPI app with the test database override."""
    from notesync.database import get_db
    from notesync.main import app

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for the test app."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def make_token(user_id: int = 1, sub: str | None = None) -> str:
    """Create a valid access token for ``user_id``."""
    from notesync.services.auth_service import create_access_token

    return create_access_token(data={"sub": sub or f"user{user_id}", "user_id": user_id})


def make_auth_headers(user_id: int = 1) -> dict[str, str]:
    """Create Authorization headers with a valid access token."""
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest_asyncio.fixture(scope="function")
async def replica_store():
    """Provide an open in-memory replica store."""
    from notesync.client.replica_store import ReplicaStore

    store = ReplicaStore(MEMORY_URL)
    await store.open()
    yield store
    await store.close()


@pytest_asyncio.fixture(scope="function")
async def make_device(test_app):
    """Factory for client devices talking to the test app in-process.

    Each device gets its own in-memory replica and API client; all of them
    are closed at teardown.
    """
    from notesync.client.api_client import SyncApiClient
    from notesync.client.coordinator import SyncCoordinator
    from notesync.client.replica_store import ReplicaStore

    devices = []

    async def _make(user_id: int = 1):
        store = await ReplicaStore(MEMORY_URL).open()
        api = SyncApiClient(
            "http://test/api",
            make_token(user_id),
            transport=ASGITransport(app=test_app),
        )
        coordinator = SyncCoordinator(store, api, interval=0)
        devices.append((store, api))
        return store, coordinator

    yield _make

    for store, api in devices:
        await api.close()
        await store.close()
