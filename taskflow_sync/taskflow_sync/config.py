"""Sync layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChangeFeedBackend(str, Enum):
    MEMORY = "memory"
    POSTGRES = "postgres"


class SyncSettings(BaseSettings):
    """Settings for the change-feed router, query cache and state store.

    Values are read from environment variables prefixed with ``SYNC_``
    (e.g. ``SYNC_CHANGE_FEED_BACKEND=postgres``) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # State store
    database_url: str = "sqlite+aiosqlite:///.taskflow/state.db"

    # Change feed
    change_feed_backend: ChangeFeedBackend = ChangeFeedBackend.MEMORY
    notify_channel: str = "taskflow_changes"

    # Reconnect backoff for dropped change-feed channels
    reconnect_base_delay: float = Field(default=0.5, gt=0.0)
    reconnect_max_delay: float = Field(default=30.0, gt=0.0)
    reconnect_jitter: bool = True

    # How long subscribe() waits for a new channel to connect (0 = don't wait)
    subscribe_timeout: float = Field(default=5.0, ge=0.0)

    # Query cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = Field(default=300, gt=0)
    cache_max_entries: int = Field(default=10_000, gt=0)


def load_sync_settings() -> SyncSettings:
    """Construct settings from the environment / ``.env`` file."""
    return SyncSettings()
