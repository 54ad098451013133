"""Tests for taskflow_sync.config."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from taskflow_sync.config import ChangeFeedBackend, SyncSettings, load_sync_settings


class TestSyncSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SYNC_CHANGE_FEED_BACKEND", raising=False)
        settings = SyncSettings(_env_file=None)

        assert settings.change_feed_backend is ChangeFeedBackend.MEMORY
        assert settings.notify_channel == "taskflow_changes"
        assert settings.reconnect_base_delay == 0.5
        assert settings.reconnect_max_delay == 30.0
        assert settings.cache_enabled is True
        assert settings.database_url.startswith("sqlite+aiosqlite")

    def test_reads_prefixed_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SYNC_CHANGE_FEED_BACKEND", "postgres")
        monkeypatch.setenv("SYNC_CACHE_TTL_SECONDS", "60")
        monkeypatch.setenv("SYNC_SUBSCRIBE_TIMEOUT", "0")

        settings = load_sync_settings()

        assert settings.change_feed_backend is ChangeFeedBackend.POSTGRES
        assert settings.cache_ttl_seconds == 60
        assert settings.subscribe_timeout == 0.0

    def test_rejects_non_positive_delay(self) -> None:
        with pytest.raises(ValidationError):
            SyncSettings(_env_file=None, reconnect_base_delay=0)
