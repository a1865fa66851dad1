from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """NoteSync application settings.

    All values are loaded from environment variables.
    A .env file in the backend directory is also supported.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Database ---
    DATABASE_URL: str = "postgresql+asyncpg://notesync:notesync@db:5432/notesync"

    # --- JWT ---
    JWT_SECRET: str = "change-this-secret-key"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- HTTP ---
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # --- Sync endpoint ---
    SYNC_PULL_OVERLAP_SECONDS: float = 1.0  # serverTime lags "now" by this much
    SYNC_PUSH_MAX_ITEMS: int = 1000

    # --- Presence ---
    PRESENCE_QUEUE_SIZE: int = 100

    # --- Sync client ---
    SYNC_SERVER_URL: str = "http://localhost:8000/api"
    REPLICA_DATABASE_URL: str = "sqlite+aiosqlite:///notesync-replica.db"
    SYNC_INTERVAL_SECONDS: float = 300.0  # 0 disables the periodic timer
    SYNC_REQUEST_TIMEOUT: float = 30.0

    @property
    def async_database_url(self) -> str:
        """Ensure the database URL uses an async driver."""
        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url.startswith("sqlite:///"):
            url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return url


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings singleton."""
    return Settings()
