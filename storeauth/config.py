from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storeauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PUBLIC_PATHS: tuple[str, ...] = (
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/refresh",
    "/api/auth/forgot-password",
    "/api/auth/reset-password",
    "/api/auth/verify-email",
    "/api/auth/check-username",
    "/api/auth/check-email",
    "/api/test",
    "/healthz",
    "/error",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    shared_fs_root: str = env_field("/srv/storeauth", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_redis_lockout: bool = env_field(
        False,
        "USE_REDIS_LOCKOUT",
        description="Track login failures in Redis so every worker sees the same counter",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and relaxed startup checks",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Bookstore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    # Signing keys
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("storeauth", "JWT_ISSUER")
    jwt_audience: str = env_field("bookstore-clients", "JWT_AUDIENCE")
    jwt_key_history: int = env_field(
        3,
        "JWT_KEY_HISTORY",
        description="Signing keys kept for verification after a rotation, newest included",
    )
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    # Account lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_duration_minutes: int = env_field(60, "LOCKOUT_DURATION_MINUTES")
    # One-time tokens
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    # Two-factor
    totp_issuer: str = env_field("Bookstore", "TOTP_ISSUER")
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_max_attempts: int = env_field(5, "TOTP_MAX_ATTEMPTS")
    totp_lockout_seconds: int = env_field(300, "TOTP_LOCKOUT_SECONDS")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")
    public_paths: list[str] = env_field(list(DEFAULT_PUBLIC_PATHS), "PUBLIC_PATHS")

    model_config = ConfigDict(extra="ignore")

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

    @field_validator("public_paths", mode="before")
    @classmethod
    def _split_public_paths(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "jwt_key_history",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "lockout_threshold",
        "lockout_duration_minutes",
        "password_reset_ttl_minutes",
        "email_verification_ttl_hours",
        "totp_interval_seconds",
        "totp_max_attempts",
        "totp_lockout_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("totp_digits")
    @classmethod
    def _validate_digits(cls, value: int) -> int:
        if value not in (6, 7, 8):
            raise ValueError("totp_digits must be 6, 7 or 8")
        return value

    @model_validator(mode="after")
    def _check_token_lifetimes(self) -> "Settings":
        # A refresh token must outlive at least one full access-token cycle after
        # the access token it accompanies expires.
        if self.refresh_token_ttl_minutes < 2 * self.access_token_ttl_minutes:
            raise ValueError(
                "refresh_token_ttl_minutes must be at least twice access_token_ttl_minutes"
            )
        return self

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/storeauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may be owned by another user inside a container
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
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
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def max_token_ttl_minutes(self) -> int:
        return max(self.access_token_ttl_minutes, self.refresh_token_ttl_minutes)


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
