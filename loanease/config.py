from __future__ import annotations

import os
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from loanease.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32

# Secret file names under SECRET_DIR, keyed by settings field
_SECRET_FILES = {
    "jwt_secret": ".jwt_secret",
    "jwt_refresh_secret": ".jwt_refresh_secret",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating one on first start."""
    secret_dir = Path(os.getenv("SECRET_DIR", "/srv/loanease"))
    secret_path = secret_dir / filename

    try:
        secret_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(secret_dir, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed",
            error=str(exc),
            path=str(secret_dir),
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Write to a temp file then rename so readers never see a partial secret
        fd, tmp_path = tempfile.mkstemp(dir=str(secret_dir), prefix=filename, suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret via environment or make SECRET_DIR writable"
        ) from exc
    logger.info("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Process-wide configuration: signing keys, lifetimes and collaborators.

    Built once at startup and handed to each service constructor; instances are
    frozen so nothing can mutate keys or TTLs after the services are wired.
    """

    # Signing keys (one per token type)
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("loanease", "JWT_ISSUER")
    jwt_audience: str = env_field("loanease-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        ge=0,
        description="Clock skew tolerance applied to token expiry checks",
    )

    # Single-use record lifetimes
    two_fa_code_digits: int = env_field(6, "TWO_FA_CODE_DIGITS", ge=4, le=10)
    two_fa_code_expiry_minutes: int = env_field(10, "TWO_FA_CODE_EXPIRY_MINUTES", gt=0)
    password_reset_expiry_hours: int = env_field(1, "PASSWORD_RESET_EXPIRY_HOURS", gt=0)
    email_verification_expiry_hours: int = env_field(
        24, "EMAIL_VERIFICATION_EXPIRY_HOURS", gt=0
    )
    invitation_expiry_days: int = env_field(7, "INVITATION_EXPIRY_DAYS", gt=0)
    max_invitation_resends: int = env_field(5, "MAX_INVITATION_RESENDS", ge=0)
    invitation_resend_interval_seconds: int = env_field(
        60, "INVITATION_RESEND_INTERVAL_SECONDS", ge=0
    )

    # Brute-force protection
    max_login_attempts: int = env_field(10, "MAX_LOGIN_ATTEMPTS", gt=0)
    attempt_window_minutes: int = env_field(15, "ATTEMPT_WINDOW_MINUTES", gt=0)
    lockout_duration_minutes: int = env_field(60, "LOCKOUT_DURATION_MINUTES", gt=0)
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    two_fa_send_rate_limit_per_minute: int = env_field(3, "TWO_FA_SEND_RATE_LIMIT_PER_MINUTE")
    verification_resend_limit_per_hour: int = env_field(
        3, "VERIFICATION_RESEND_LIMIT_PER_HOUR"
    )

    # Persistence
    database_url: str = env_field("postgresql://localhost:5432/loanease", "DATABASE_URL")
    database_timeout_seconds: float = env_field(5.0, "DATABASE_TIMEOUT_SECONDS", gt=0)
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets",
    )

    # Outbound email
    postmark_server_token: str | None = env_field(None, "POSTMARK_SERVER_TOKEN")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Loanease", "EMAIL_FROM_NAME")
    email_timeout_seconds: float = env_field(10.0, "EMAIL_TIMEOUT_SECONDS", gt=0)
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # HTTP surface
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("jwt_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{info.field_name} must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        return _load_or_create_secret(_SECRET_FILES[info.field_name])

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @model_validator(mode="after")
    def _require_distinct_keys(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.refresh_token_ttl_days)

    @property
    def two_fa_code_ttl(self) -> timedelta:
        return timedelta(minutes=self.two_fa_code_expiry_minutes)

    @property
    def password_reset_ttl(self) -> timedelta:
        return timedelta(hours=self.password_reset_expiry_hours)

    @property
    def email_verification_ttl(self) -> timedelta:
        return timedelta(hours=self.email_verification_expiry_hours)

    @property
    def invitation_ttl(self) -> timedelta:
        return timedelta(days=self.invitation_expiry_days)


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
