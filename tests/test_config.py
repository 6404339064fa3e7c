from __future__ import annotations

import pytest

from amicii.config import clear_settings_cache, get_settings


@pytest.fixture
def fresh_settings(isolated_env, monkeypatch):
    for var in (
        "RETENTION_DAYS",
        "RETENTION_SWEEP_ENABLED",
        "RETENTION_INTERVAL_SECONDS",
        "RESERVATION_DEFAULT_TTL_SECONDS",
        "ACK_TIMESTAMP_POLICY",
        "DATABASE_BUSY_TIMEOUT_MS",
    ):
        monkeypatch.delenv(var, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


def test_defaults(fresh_settings):
    settings = get_settings()
    assert settings.environment == "test"
    assert settings.http.host == "127.0.0.1"
    assert settings.http.port == 8765
    assert settings.retention.days == 30
    assert settings.retention_days == 30
    assert settings.retention.sweep_enabled is True
    assert settings.retention.interval_seconds == 21600
    assert settings.reservation_default_ttl_seconds == 3600
    assert settings.ack_timestamp_policy == "overwrite"
    assert settings.database.busy_timeout_ms == 5000


def test_settings_are_cached_until_cleared(fresh_settings, monkeypatch):
    first = get_settings()
    monkeypatch.setenv("RETENTION_DAYS", "7")
    assert get_settings() is first
    clear_settings_cache()
    assert get_settings().retention.days == 7


def test_env_overrides(fresh_settings, monkeypatch):
    monkeypatch.setenv("RETENTION_DAYS", "14")
    monkeypatch.setenv("RETENTION_SWEEP_ENABLED", "no")
    monkeypatch.setenv("RESERVATION_DEFAULT_TTL_SECONDS", "900")
    monkeypatch.setenv("ACK_TIMESTAMP_POLICY", "FIRST")
    monkeypatch.setenv("HTTP_PORT", "9000")
    clear_settings_cache()
    settings = get_settings()
    assert settings.retention.days == 14
    assert settings.retention.sweep_enabled is False
    assert settings.reservation_default_ttl_seconds == 900
    assert settings.ack_timestamp_policy == "first"
    assert settings.http.port == 9000


def test_malformed_values_fall_back_to_defaults(fresh_settings, monkeypatch):
    monkeypatch.setenv("RETENTION_DAYS", "-5")
    monkeypatch.setenv("RETENTION_INTERVAL_SECONDS", "soon")
    monkeypatch.setenv("ACK_TIMESTAMP_POLICY", "sometimes")
    monkeypatch.setenv("HTTP_PORT", "eighty")
    clear_settings_cache()
    settings = get_settings()
    assert settings.retention.days == 0
    assert settings.retention.interval_seconds == 21600
    assert settings.ack_timestamp_policy == "overwrite"
    assert settings.http.port == 8765


def test_database_url_comes_from_env(isolated_env):
    assert get_settings().database.url == f"sqlite+aiosqlite:///{isolated_env}"
