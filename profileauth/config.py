from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from profileauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _parse_key_list(raw: str | None) -> dict[str, str]:
    """Parse ``kid:secret,kid:secret`` into a mapping."""
    keys: dict[str, str] = {}
    if not raw:
        return keys
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        kid, sep, secret = chunk.partition(":")
        if not sep or not kid.strip() or not secret.strip():
            raise ValueError("verification keys must be formatted as kid:secret")
        keys[kid.strip()] = secret.strip()
    return keys


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    shared_fs_root: str = env_field("/srv/profileauth", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour; allows running without Redis.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Token issuer
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("primary", "JWT_KEY_ID")
    jwt_verification_keys: str | None = env_field(
        None,
        "JWT_VERIFICATION_KEYS",
        description="Retired signing keys still accepted for verification, as kid:secret pairs",
    )
    jwt_issuer: str = env_field("profileauth", "JWT_ISSUER")
    jwt_audience: str = env_field("profile-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    session_max_lifetime_days: int = env_field(90, "SESSION_MAX_LIFETIME_DAYS", ge=1)
    two_factor_challenge_ttl_minutes: int = env_field(
        5, "TWO_FACTOR_CHALLENGE_TTL_MINUTES", ge=1
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)

    # One-time codes
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1)
    otp_pepper: str = env_field("", "OTP_PEPPER")

    # Two-factor
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; falls back to JWT_SECRET",
    )
    totp_issuer: str = env_field("ProfileAuth", "TOTP_ISSUER")
    totp_interval: int = env_field(30, "TOTP_INTERVAL", ge=15)
    totp_digits: int = env_field(6, "TOTP_DIGITS", ge=6, le=8)
    totp_window: int = env_field(1, "TOTP_WINDOW", ge=0, le=2)
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT", ge=1, le=20)

    # Identity
    unique_id_max_attempts: int = env_field(10, "UNIQUE_ID_MAX_ATTEMPTS", ge=1)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=6)

    # OAuth providers
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")

    # Notifier
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("ProfileAuth", "EMAIL_FROM_NAME")
    sms_webhook_url: str | None = env_field(None, "SMS_WEBHOOK_URL")
    whatsapp_webhook_url: str | None = env_field(None, "WHATSAPP_WEBHOOK_URL")
    notifier_api_key: str | None = env_field(None, "NOTIFIER_API_KEY")
    notifier_timeout_seconds: float = env_field(10.0, "NOTIFIER_TIMEOUT_SECONDS")

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

    @property
    def verification_keys(self) -> dict[str, str]:
        return _parse_key_list(self.jwt_verification_keys)

    @field_validator("jwt_verification_keys")
    @classmethod
    def _validate_verification_keys(cls, value: str | None) -> str | None:
        _parse_key_list(value)
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/profileauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
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
