from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeep.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments recognised by the cookie and CORS layers."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    return Field(default, json_schema_extra={**extra, "env": env}, **kwargs)


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/gatekeep", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/gatekeep", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables deterministic in-process state for CI and tests.",
    )
    cors_allow_origins: str = env_field("http://localhost:3000", "CORS_ALLOW_ORIGINS")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatekeep", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    default_role: str = env_field("USER", "DEFAULT_ROLE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("gatekeep", "JWT_ISSUER")
    jwt_audience: str = env_field("gatekeep-clients", "JWT_AUDIENCE")
    csrf_secret: str | None = env_field(
        None,
        "CSRF_SECRET",
        description="HMAC key for double-submit cookies; defaults to JWT_SECRET.",
    )
    mfa_secret_key: str | None = env_field(None, "MFA_SECRET_KEY")
    mfa_app_name: str = env_field("Gatekeep", "MFA_APP_NAME")
    mfa_issuer: str = env_field("Gatekeep", "MFA_ISSUER")

    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES"
    )
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    csrf_token_ttl_minutes: int = env_field(30, "CSRF_TOKEN_TTL_MINUTES")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS")
    lockout_seconds: int = env_field(300, "LOCKOUT_SECONDS")

    login_rate_limit_per_minute: int = env_field(5, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(3, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(
        10, "REFRESH_RATE_LIMIT_PER_MINUTE"
    )
    reset_rate_limit_per_window: int = env_field(3, "RESET_RATE_LIMIT_PER_WINDOW")
    verify_otp_rate_limit_per_window: int = env_field(
        5, "VERIFY_OTP_RATE_LIMIT_PER_WINDOW"
    )
    reset_rate_limit_window_seconds: int = env_field(
        300, "RESET_RATE_LIMIT_WINDOW_SECONDS"
    )
    csrf_rate_limit_per_minute: int = env_field(30, "CSRF_RATE_LIMIT_PER_MINUTE")

    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS"
    )
    csrf_cleanup_interval_seconds: int = env_field(
        1800, "CSRF_CLEANUP_INTERVAL_SECONDS"
    )
    otp_cleanup_interval_seconds: int = env_field(
        86400, "OTP_CLEANUP_INTERVAL_SECONDS"
    )
    cleanup_enabled: bool = env_field(True, "CLEANUP_ENABLED")

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
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def effective_csrf_secret(self) -> str:
        return self.csrf_secret or self.jwt_secret

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_is_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, Environment):
            return value
        return Environment(str(value).strip().lower())

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_refresh_secret")


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating it on first use.

    Secrets live under ``SHARED_FS_ROOT`` so tokens survive restarts. The file
    is written to a temp path and renamed into place with ``0600`` permissions.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gatekeep"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # container mounts may pin ownership
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.warning("secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if persisted and len(persisted) >= 32:
                return persisted

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}.", suffix=".tmp")
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
            f"Unable to persist {filename}; set the secret via env or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the environment."""

    global _settings_cache
    _settings_cache = None
