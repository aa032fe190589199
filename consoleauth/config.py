from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from consoleauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_OBFUSCATION_KEY = "SecureOnlyThingsAreDone"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the admin console authentication service."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/consoleauth", "SHARED_FS_ROOT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets.",
    )
    secret_key: str | None = env_field(
        None,
        "SECRET_KEY",
        description="Key material for encrypting stored MFA secrets.",
        validate_default=True,
    )
    obfuscation_key: str = env_field(
        DEFAULT_OBFUSCATION_KEY,
        "OBFUSCATION_KEY",
        description="Shared XOR key used by the console to obfuscate login fields.",
    )
    login_secret_code: str | None = env_field(
        None,
        "LOGIN_SECRET_CODE",
        description="Pre-shared code required on login when set.",
    )
    totp_issuer: str = env_field("Admin Console", "TOTP_ISSUER")
    session_ttl_minutes: int = env_field(8 * 60, "SESSION_TTL_MINUTES")
    rotation_ticket_ttl_seconds: int = env_field(600, "ROTATION_TICKET_TTL_SECONDS")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(60, "LOGIN_RATE_WINDOW_SECONDS")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")
    admin_rate_limit_per_minute: int = env_field(30, "ADMIN_RATE_LIMIT_PER_MINUTE")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("obfuscation_key")
    @classmethod
    def _require_obfuscation_key(cls, value: str) -> str:
        if not value:
            raise ValueError("OBFUSCATION_KEY must not be empty")
        return value

    @field_validator("login_secret_code")
    @classmethod
    def _blank_secret_code(cls, value: str | None) -> str | None:
        return value or None

    @field_validator(
        "session_ttl_minutes",
        "rotation_ticket_ttl_seconds",
        "backup_code_count",
        "mfa_max_attempts",
        "mfa_lockout_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("secret_key")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so encrypted MFA secrets survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/consoleauth"))
        secret_path = fs_root / ".secret_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "secret_key_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "secret_key_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".secret_key_", suffix=".tmp"
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
                "secret_key_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist secret key; set SECRET_KEY or make SHARED_FS_ROOT writable"
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
