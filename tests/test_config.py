import pytest
from pydantic import ValidationError

from taskdeck.config import Settings, get_settings, reset_settings_cache


def test_env_overrides_defaults(monkeypatch):
    monkeypatch.setenv("JWT_EXPIRES_IN", "30m")
    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

    settings = Settings.from_env()

    assert settings.jwt_expires_in == "30m"
    assert settings.max_login_attempts == 3
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_defaults_match_documented_values():
    settings = Settings(jwt_secret="x" * 40)

    assert settings.jwt_expires_in == "15m"
    assert settings.jwt_refresh_expires_in == "7d"
    assert settings.jwt_issuer == "task-management-api"
    assert settings.jwt_audience == "task-management-app"
    assert settings.max_login_attempts == 5
    assert settings.lockout_minutes == 15
    assert settings.session_ttl_days == 7
    assert settings.default_role == "user"
    assert settings.is_production is False
    assert Settings(jwt_secret="x" * 40, app_env="Production").is_production


def test_invalid_ttl_is_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, jwt_expires_in="fifteen minutes")


def test_missing_secret_is_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_settings_cache_can_be_reset(monkeypatch):
    reset_settings_cache()
    cached = get_settings()
    assert get_settings() is cached

    monkeypatch.setenv("LOCKOUT_MINUTES", "30")
    reset_settings_cache()
    assert get_settings().lockout_minutes == 30
    reset_settings_cache()
