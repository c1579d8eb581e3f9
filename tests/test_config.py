"""Settings tests."""

import pytest

from studyhub.config import Settings, get_settings


def test_defaults() -> None:
    settings = Settings()
    assert settings.change_channel_prefix == "changes:user:"
    assert settings.tracking_autosave_interval_minutes == 5
    assert settings.tracking_min_session_minutes == 1
    assert settings.tracking_liveness_threshold_minutes == 2
    assert settings.tracking_hidden_finalize_minutes == 30
    assert settings.notifications_feed_limit == 50


def test_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STUDYHUB_TRACKING_AUTOSAVE_INTERVAL_MINUTES", "1.5")
    monkeypatch.setenv("STUDYHUB_WS_MAX_CONNECTIONS_PER_USER", "2")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.tracking_autosave_interval_minutes == 1.5
    assert settings.ws_max_connections_per_user == 2


def test_settings_cached() -> None:
    assert get_settings() is get_settings()
