from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pastcare.logging import get_logger

logger = get_logger(__name__)


# Dialing prefixes routed through Africa's Talking.
DEFAULT_AFRICAS_TALKING_COUNTRIES = (
    "+233",  # Ghana
    "+234",  # Nigeria
    "+254",  # Kenya
    "+27",  # South Africa
    "+256",  # Uganda
    "+255",  # Tanzania
    "+250",  # Rwanda
    "+263",  # Zimbabwe
    "+260",  # Zambia
    "+265",  # Malawi
    "+237",  # Cameroon
    "+225",  # Ivory Coast
    "+221",  # Senegal
)

DEFAULT_TWILIO_COUNTRIES = (
    "+1",
    "+44",
    "+49",
    "+33",
    "+39",
    "+34",
    "+81",
    "+86",
    "+91",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth kernel."""

    database_url: str = env_field(
        "postgresql://localhost:5432/pastcare", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/pastcare", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and tolerate a missing Redis.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("pastcare", "JWT_ISSUER")
    jwt_audience: str = env_field("pastcare-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    remember_me_access_token_ttl_minutes: int = env_field(
        60 * 24 * 30, "REMEMBER_ME_ACCESS_TOKEN_TTL_MINUTES"
    )
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 30, "REFRESH_TOKEN_TTL_MINUTES"
    )
    max_active_sessions_per_user: int = env_field(
        5,
        "MAX_ACTIVE_SESSIONS_PER_USER",
        description="Concurrent refresh tokens allowed per user before the least recently used is revoked.",
    )
    token_retention_days: int = env_field(
        7,
        "TOKEN_RETENTION_DAYS",
        description="Days an expired refresh token is kept for audit before cleanup deletes it.",
    )
    # Brute-force protection
    login_max_failed_attempts: int = env_field(5, "LOGIN_MAX_FAILED_ATTEMPTS")
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES")
    login_attempt_window_minutes: int = env_field(15, "LOGIN_ATTEMPT_WINDOW_MINUTES")
    login_max_ip_attempts: int = env_field(10, "LOGIN_MAX_IP_ATTEMPTS")
    login_attempt_retention_days: int = env_field(30, "LOGIN_ATTEMPT_RETENTION_DAYS")
    # Maintenance worker
    maintenance_enabled: bool = env_field(True, "MAINTENANCE_ENABLED")
    maintenance_interval_seconds: int = env_field(3600, "MAINTENANCE_INTERVAL_SECONDS")
    # Phone numbers / SMS
    default_country_code: str = env_field("+233", "DEFAULT_COUNTRY_CODE")
    africas_talking_countries: tuple[str, ...] = env_field(
        DEFAULT_AFRICAS_TALKING_COUNTRIES, "AFRICAS_TALKING_COUNTRIES"
    )
    twilio_countries: tuple[str, ...] = env_field(
        DEFAULT_TWILIO_COUNTRIES, "TWILIO_COUNTRIES"
    )
    africas_talking_sender_id: str | None = env_field(
        None, "AFRICAS_TALKING_SENDER_ID"
    )
    twilio_from_number: str | None = env_field(None, "TWILIO_FROM_NUMBER")

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

    @field_validator("africas_talking_countries", "twilio_countries", mode="before")
    @classmethod
    def _split_country_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @field_validator("default_country_code")
    @classmethod
    def _validate_country_code(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith("+") or not value[1:].isdigit():
            raise ValueError("default_country_code must look like +233")
        return value

    @field_validator(
        "max_active_sessions_per_user",
        "login_max_failed_attempts",
        "login_max_ip_attempts",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/pastcare"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
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
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        try:
            import tempfile

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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
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
