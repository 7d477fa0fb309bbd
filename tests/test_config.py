from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from sessionguard.config import MIN_JWT_SECRET_BYTES, Settings, get_settings, reset_settings_cache

SECRET = "config-test-secret-that-is-long-enough-for-hs256"


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * (MIN_JWT_SECRET_BYTES - 1))


def test_missing_jwt_secret_is_generated_and_persisted(tmp_path):
    first = Settings(secret_dir=str(tmp_path), jwt_secret=None)
    second = Settings(secret_dir=str(tmp_path), jwt_secret=None)

    assert len(first.jwt_secret.encode()) >= MIN_JWT_SECRET_BYTES
    assert first.jwt_secret == second.jwt_secret
    assert (Path(tmp_path) / ".jwt_secret").read_text() == first.jwt_secret


def test_weak_persisted_secret_is_replaced(tmp_path):
    (Path(tmp_path) / ".jwt_secret").write_text("short")

    settings = Settings(secret_dir=str(tmp_path), jwt_secret=None)

    assert settings.jwt_secret != "short"
    assert len(settings.jwt_secret.encode()) >= MIN_JWT_SECRET_BYTES


def test_defaults_and_derived_values():
    settings = Settings(jwt_secret=SECRET)

    assert settings.access_token_ttl == timedelta(minutes=10)
    assert settings.idle_timeout == timedelta(minutes=120)
    assert settings.session_meta_ttl == timedelta(days=14)
    assert settings.browser_session_ttl == timedelta(minutes=120)
    assert settings.token_audience == settings.jwt_issuer == "sessionguard"
    assert settings.secure_cookies is True


def test_explicit_audience_wins():
    settings = Settings(jwt_secret=SECRET, jwt_audience="frontend")

    assert settings.token_audience == "frontend"


@pytest.mark.parametrize("profile,secure", [("local", False), ("LOCAL", False), ("dev", True)])
def test_secure_cookie_flag_follows_profile(profile, secure):
    assert Settings(jwt_secret=SECRET, app_profile=profile).secure_cookies is secure


def test_non_positive_ttl_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, access_token_ttl_minutes=0)


def test_cors_origins_split_from_env(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, ,https://b.example")
    monkeypatch.setenv("IDLE_TIMEOUT_MINUTES", "30")
    reset_settings_cache()
    try:
        settings = get_settings()
    finally:
        reset_settings_cache()

    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.idle_timeout == timedelta(minutes=30)


def test_settings_are_immutable():
    settings = Settings(jwt_secret=SECRET)

    with pytest.raises(ValidationError):
        settings.jwt_issuer = "other"
