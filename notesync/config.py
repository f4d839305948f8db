"""
Configuration settings using Pydantic Settings.
"""

from pathlib import Path
from pydantic import model_validator
from pydantic_settings import BaseSettings
from functools import lru_cache

BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    """Sync engine settings loaded from environment variables."""

    API_BASE_URL: str = "http://localhost:3001"
    REALTIME_URL: str = "http://localhost:3001"

    DATABASE_PATH: str = "data/notes.db"
    STORE_BUSY_TIMEOUT_SECONDS: float = 5.0

    SYNC_REQUEST_TIMEOUT_SECONDS: float = 15.0
    SYNC_INTERVAL_SECONDS: float = 0.0
    CONNECTIVITY_DEBOUNCE_SECONDS: float = 1.0

    REALTIME_EMIT_TIMEOUT_SECONDS: float = 5.0
    REALTIME_CONNECT_TIMEOUT_SECONDS: float = 10.0
    REALTIME_RECONNECTION_ATTEMPTS: int = 5
    REALTIME_RECONNECTION_DELAY_SECONDS: float = 1.0

    DEBUG: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }

    @model_validator(mode="after")
    def resolve_relative_paths(self):
        if self.DATABASE_PATH == ":memory:":
            return self

        db_path = Path(self.DATABASE_PATH)
        if not db_path.is_absolute():
            self.DATABASE_PATH = str((BASE_DIR / db_path).resolve())

        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    :return: Cached Settings instance
    :rtype: Settings
    """
    return Settings()


settings = get_settings()
