from datetime import timedelta

import pytest
from pydantic import ValidationError

from loanease.config import Settings, get_settings, reset_settings_cache

ACCESS = "config-access-secret-long-enough-for-tests-1"
REFRESH = "config-refresh-secret-long-enough-for-tests-2"


def test_defaults_and_derived_lifetimes():
    settings = Settings(jwt_secret=ACCESS, jwt_refresh_secret=REFRESH)
    assert settings.access_token_ttl == timedelta(minutes=15)
    assert settings.refresh_token_ttl == timedelta(days=7)
    assert settings.two_fa_code_ttl == timedelta(minutes=10)
    assert settings.password_reset_ttl == timedelta(hours=1)
    assert settings.invitation_ttl == timedelta(days=7)
    assert settings.token_leeway_seconds == 0


def test_short_secret_is_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="short", jwt_refresh_secret=REFRESH)


def test_keys_must_differ():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=ACCESS, jwt_refresh_secret=ACCESS)


def test_missing_secrets_are_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_DIR", str(tmp_path))
    first = Settings()
    second = Settings()

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert first.jwt_secret != first.jwt_refresh_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.test, https://b.test")
    monkeypatch.setenv("REDIS_URL", "")
    reset_settings_cache()
    settings = get_settings()

    assert settings.access_token_ttl == timedelta(minutes=5)
    assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]
    assert settings.redis_url is None


def test_settings_are_frozen():
    settings = Settings(jwt_secret=ACCESS, jwt_refresh_secret=REFRESH)
    with pytest.raises(ValidationError):
        settings.access_token_ttl_minutes = 60
