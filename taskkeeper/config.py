from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskkeeper.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the task service, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taskkeeper", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/taskkeeper", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relax infrastructure requirements (Redis) for local runs and CI",
    )
    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("taskkeeper", "JWT_ISSUER")
    jwt_audience: str = env_field("taskkeeper-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int | None = env_field(
        None,
        "TOKEN_TTL_MINUTES",
        description="Session token lifetime; unset means tokens live until revoked",
    )
    session_cache_ttl_seconds: int = env_field(
        300,
        "SESSION_CACHE_TTL_SECONDS",
        description="How long a resolved token stays in the Redis session cache",
    )
    revoke_sessions_on_password_change: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_CHANGE"
    )
    # Task listing
    default_page_size: int = env_field(50, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)
    # Avatars
    max_avatar_bytes: int = env_field(1_000_000, "MAX_AVATAR_BYTES", ge=1)
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Task Keeper", "EMAIL_FROM_NAME")
    # HTTP
    cors_allow_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of origins allowed by CORS",
    )

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

    @field_validator("redis_url", "smtp_host", "email_from_address", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("token_ttl_minutes", mode="before")
    @classmethod
    def _parse_token_ttl(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        ttl = int(value)
        if ttl <= 0:
            return None
        return ttl

    @property
    def cors_origins(self) -> list[str]:
        return [
            origin.strip()
            for origin in self.cors_allow_origins.split(",")
            if origin.strip()
        ]

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(
            Path(os.getenv("SHARED_FS_ROOT", "/srv/taskkeeper")) / ".jwt_secret"
        )


def _load_or_create_secret(secret_path: Path) -> str:
    """Reuse the secret stored at ``secret_path`` or write a new one atomically.

    Persisting it keeps issued tokens valid across restarts.
    """
    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= 32:
                return persisted

    generated = secrets.token_urlsafe(64)
    tmp_name: str | None = None
    try:
        secret_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", dir=secret_path.parent, prefix=".jwt_secret_", delete=False
        ) as handle:
            tmp_name = handle.name
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"cannot persist a JWT secret at {secret_path}; set JWT_SECRET instead"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
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
