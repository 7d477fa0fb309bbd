from __future__ import annotations

import os
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the hash output are rejected
MIN_JWT_SECRET_BYTES = 32

LOCAL_PROFILE = "local"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, resolved once at startup and injected."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime resets and in-memory fallbacks for the test suite.",
    )
    app_profile: str = env_field(
        "prod",
        "APP_PROFILE",
        description="Deployment profile; 'local' disables the Secure cookie attribute.",
    )
    secret_dir: str = env_field("/srv/sessionguard", "SECRET_DIR")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str | None = env_field(None, "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(10, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    idle_timeout_minutes: int = env_field(120, "IDLE_TIMEOUT_MINUTES", gt=0)
    session_meta_ttl_days: int = env_field(14, "SESSION_META_TTL_DAYS", gt=0)

    access_cookie_name: str = env_field("access_token", "ACCESS_COOKIE_NAME")
    ui_cookie_name: str = env_field("user_info", "UI_COOKIE_NAME")
    csrf_cookie_name: str = env_field("XSRF-TOKEN", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-XSRF-TOKEN", "CSRF_HEADER_NAME")
    csrf_parameter_name: str = env_field("_csrf", "CSRF_PARAMETER_NAME")
    csrf_cookie_max_age_seconds: int = env_field(3600, "CSRF_COOKIE_MAX_AGE_SECONDS")
    browser_session_cookie_name: str = env_field("SESSION", "BROWSER_SESSION_COOKIE_NAME")
    browser_session_ttl_minutes: int = env_field(
        120, "BROWSER_SESSION_TTL_MINUTES", gt=0
    )

    idp_registration_id: str = env_field("cognito", "IDP_REGISTRATION_ID")
    idp_client_id: str | None = env_field(None, "IDP_CLIENT_ID")
    idp_client_secret: str | None = env_field(None, "IDP_CLIENT_SECRET")
    idp_authorization_url: str | None = env_field(None, "IDP_AUTHORIZATION_URL")
    idp_token_url: str | None = env_field(None, "IDP_TOKEN_URL")
    idp_userinfo_url: str | None = env_field(None, "IDP_USERINFO_URL")
    idp_redirect_uri: str | None = env_field(None, "IDP_REDIRECT_URI")
    idp_scope: str = env_field("openid email profile", "IDP_SCOPE")
    idp_user_name_attribute: str = env_field("sub", "IDP_USER_NAME_ATTRIBUTE")
    idp_timeout_seconds: float = env_field(5.0, "IDP_TIMEOUT_SECONDS", gt=0)
    idp_clock_skew_seconds: int = env_field(60, "IDP_CLOCK_SKEW_SECONDS", ge=0)

    post_login_redirect: str = env_field("/", "POST_LOGIN_REDIRECT")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def secure_cookies(self) -> bool:
        return self.app_profile.strip().lower() != LOCAL_PROFILE

    @property
    def token_audience(self) -> str:
        return self.jwt_audience or self.jwt_issuer

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.idle_timeout_minutes)

    @property
    def session_meta_ttl(self) -> timedelta:
        return timedelta(days=self.session_meta_ttl_days)

    @property
    def browser_session_ttl(self) -> timedelta:
        return timedelta(minutes=self.browser_session_ttl_minutes)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value.encode("utf-8")) < MIN_JWT_SECRET_BYTES:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_BYTES} bytes for HS256"
                )
            return value
        # Persist a generated secret so tokens survive restarts of a single node
        secret_root = Path(info.data.get("secret_dir") or "/srv/sessionguard")
        secret_path = secret_root / ".jwt_secret"

        try:
            secret_root.mkdir(parents=True, exist_ok=True)
            os.chmod(secret_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup", error=str(exc), path=str(secret_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )
                raise RuntimeError(
                    "Unable to read persisted JWT secret; set JWT_SECRET"
                ) from exc
            if len(persisted.encode("utf-8")) >= MIN_JWT_SECRET_BYTES:
                return persisted

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(secret_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SECRET_DIR writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
