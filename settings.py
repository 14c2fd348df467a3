"""Workspace configuration loaded from environment variables."""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Backend
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: Optional[str] = None
    PORT: int = 8000

    LOG_LEVEL: str = "INFO"

    # Debounce windows (seconds)
    AUTOSAVE_DEBOUNCE: float = 1.2
    PREFERENCE_DEBOUNCE: float = 0.6
    NOTE_DEBOUNCE: float = 0.8
    SAVED_INDICATOR_SECONDS: float = 2.0

    # Inline attachments share the document size ceiling with the task
    MAX_ATTACHMENT_BYTES: int = int(1.5 * 1024 * 1024)

    # Wait for a freshly created task to show up in the local store
    OPEN_TASK_ATTEMPTS: int = 10
    OPEN_TASK_INTERVAL: float = 0.15

    # Subscription recovery
    RESUBSCRIBE_BASE_DELAY: float = 1.0
    RESUBSCRIBE_MAX_DELAY: float = 60.0
    RESUBSCRIBE_MAX_ATTEMPTS: int = 8

    TOAST_SECONDS: float = 3.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
