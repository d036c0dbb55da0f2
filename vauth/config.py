from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from vauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token/session service."""

    database_url: str = env_field("postgresql://localhost:5432/vauth", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/vauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors; enables runtime resets.",
    )

    # Token and session lifetimes
    token_ttl_seconds: int = env_field(
        300, "TOKEN_EXPIRY_SECONDS", description="Lifetime of an issued one-time token"
    )
    token_length: int = env_field(6, "TOKEN_LENGTH")
    session_ttl_minutes: int = env_field(
        10, "SESSION_EXPIRY_MINUTES", description="Lifetime of a session opened by verification"
    )

    # Maintenance
    sweep_interval_seconds: int = env_field(300, "SWEEP_INTERVAL_SECONDS")
    purge_interval_seconds: int = env_field(600, "PURGE_INTERVAL_SECONDS")
    auto_purge_enabled: bool = env_field(
        False,
        "AUTO_PURGE_ENABLED",
        description="Start with periodic deletion of EXPIRED tokens switched on (toggleable by admins)",
    )

    # Failed-attempt alerting
    failed_attempt_threshold: int = env_field(3, "FAILED_ATTEMPT_THRESHOLD")
    failed_attempt_window_seconds: int = env_field(15 * 60, "FAILED_ATTEMPT_WINDOW_SECONDS")

    # Admin console
    admin_username: str | None = env_field(None, "ADMIN_USERNAME")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")
    admin_session_ttl_minutes: int = env_field(60, "ADMIN_SESSION_TTL_MINUTES")

    encryption_key: str | None = env_field(None, "ENCRYPTION_KEY", validate_default=True)
    event_topic: str = env_field("admin", "EVENT_TOPIC")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Map each field to the environment variable it is read from."""
        names = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            names[name] = extra.get("env", name.upper())
        return names

    @classmethod
    def from_env(cls) -> "Settings":
        """Read every field from the process environment, falling back to `.env`."""
        sources = (dotenv_values(".env"), os.environ)
        values = {}
        for name, env_name in cls.env_names().items():
            for source in sources:
                if source.get(env_name) is not None:
                    values[name] = source[env_name]
        return cls(**values)

    @field_validator(
        "token_ttl_seconds",
        "session_ttl_minutes",
        "sweep_interval_seconds",
        "purge_interval_seconds",
        "failed_attempt_threshold",
        "failed_attempt_window_seconds",
        "admin_session_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("token_length")
    @classmethod
    def _validate_token_length(cls, value: int) -> int:
        if not 4 <= value <= 32:
            raise ValueError("token_length must be between 4 and 32")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("encryption_key", mode="before")
    @classmethod
    def _ensure_encryption_key(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # shared_fs_root is declared earlier, so it is already validated here
        return _load_or_create_key(Path(info.data.get("shared_fs_root") or "/srv/vauth"))


def _load_or_create_key(fs_root: Path) -> str:
    """Return the key persisted under ``fs_root``, creating it on first start.

    The file is created with O_EXCL so two processes starting together agree
    on a single key; the loser reads the winner's file.
    """
    key_path = fs_root / ".encryption_key"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("encryption_key_dir_setup_failed", error=str(exc), path=str(fs_root))

    generated = secrets.token_urlsafe(48)
    try:
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        if key_path.is_symlink():
            raise RuntimeError(f"refusing to read encryption key through symlink {key_path}")
        persisted = key_path.read_text().strip()
        if len(persisted) < 32:
            raise RuntimeError(f"encryption key at {key_path} is too short")
        return persisted
    except OSError as exc:
        logger.error("encryption_key_persist_failed", error=str(exc), path=str(key_path))
        raise RuntimeError(
            "Unable to persist encryption key; set ENCRYPTION_KEY or make SHARED_FS_ROOT writable"
        ) from exc
    with os.fdopen(fd, "w") as handle:
        handle.write(generated)
    logger.info("encryption_key_generated", path=str(key_path))
    return generated


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    """Settings for this process, read from the environment on first use."""
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
