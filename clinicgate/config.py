from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from clinicgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    """Declare a settings field read from environment variable ``env``."""
    extra = {**(kwargs.pop("json_schema_extra", None) or {}), "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(fs_root: Path) -> str:
    """Reuse the signing secret under ``fs_root`` or write a fresh one there.

    Keeping it on disk means issued credentials survive a restart.
    """
    secret_file = fs_root / ".jwt_secret"
    if secret_file.is_file() and not secret_file.is_symlink():
        stored = secret_file.read_text().strip()
        if len(stored) >= 32:
            return stored
        logger.warning("jwt_secret_file_ignored", path=str(secret_file), reason="too_short")

    value = secrets.token_urlsafe(64)
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        fd, staging = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret.")
        with os.fdopen(fd, "w") as handle:
            handle.write(value)
        os.chmod(staging, 0o600)
        os.replace(staging, secret_file)
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", path=str(secret_file), error=str(exc))
        raise RuntimeError(
            "cannot persist a signing secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_file))
    return value


class Settings(BaseModel):
    """Runtime settings for the credential service."""

    model_config = ConfigDict(extra="ignore")

    # storage
    database_url: str = env_field("postgresql://localhost:5432/clinicgate", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/clinicgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Permits runtime resets and uses a blocking Redis client",
    )
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    audit_timeout_seconds: float = env_field(2.0, "AUDIT_TIMEOUT_SECONDS")

    # credentials
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("clinicgate", "JWT_ISSUER")
    jwt_audience: str = env_field("clinic-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking access credential expiry",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    session_max_lifetime_hours: int = env_field(
        30 * 24,
        "SESSION_MAX_LIFETIME_HOURS",
        description="Absolute lifetime of a refresh family regardless of rotation",
    )

    # login protection
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_lockout_minutes: int = env_field(30, "LOGIN_LOCKOUT_MINUTES")
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(60, "REFRESH_RATE_LIMIT_PER_MINUTE")

    # audit views
    default_page_size: int = env_field(50, "DEFAULT_PAGE_SIZE")
    max_page_size: int = env_field(200, "MAX_PAGE_SIZE")
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # http
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, then ``.env``."""
        file_values = dotenv_values(".env")
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            env_name = extra.get("env") or name.upper()
            raw = os.environ.get(env_name, file_values.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value if value and value.strip() else None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any, info: ValidationInfo) -> str:
        if value:
            return value
        # shared_fs_root is declared earlier, so it is already validated here
        fs_root = info.data.get("shared_fs_root") or cls.model_fields["shared_fs_root"].default
        return _load_or_create_secret(Path(fs_root))


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Drop cached settings so the next call re-reads the environment."""
    global _settings_cache
    _settings_cache = None
