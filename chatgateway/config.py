from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatgateway.logging import get_logger

logger = get_logger(__name__)

_REASONING_EFFORTS = {"low", "medium", "high"}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, read once at startup."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chatgateway", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/chatgateway", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime resets and in-memory fallbacks used by the test suite.",
    )
    build_sha: str | None = env_field(None, "BUILD_SHA")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Bearer verification
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("chatgateway", "JWT_ISSUER")
    jwt_audience: str = env_field("chatgateway-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")

    # Upstream providers
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    anthropic_api_key: str | None = env_field(None, "ANTHROPIC_API_KEY")
    anthropic_base_url: str = env_field(
        "https://api.anthropic.com/v1", "ANTHROPIC_BASE_URL"
    )
    anthropic_version: str = env_field("2023-06-01", "ANTHROPIC_VERSION")
    gemini_api_key: str | None = env_field(None, "GEMINI_API_KEY")
    gemini_base_url: str = env_field(
        "https://generativelanguage.googleapis.com/v1beta", "GEMINI_BASE_URL"
    )
    provider_connect_timeout_seconds: float = env_field(
        10.0, "PROVIDER_CONNECT_TIMEOUT_SECONDS"
    )
    provider_read_timeout_seconds: float = env_field(
        60.0,
        "PROVIDER_READ_TIMEOUT_SECONDS",
        description="Longest silence tolerated between upstream stream chunks.",
    )

    # Generation defaults
    default_max_tokens: int = env_field(4000, "DEFAULT_MAX_TOKENS")
    default_temperature: float = env_field(0.7, "DEFAULT_TEMPERATURE")
    reasoning_max_completion_tokens: int = env_field(
        25000, "REASONING_MAX_COMPLETION_TOKENS"
    )
    reasoning_effort: str = env_field("medium", "REASONING_EFFORT")

    # Accounting and limits
    cost_per_token: float = env_field(0.001, "COST_PER_TOKEN")
    chat_rate_limit_per_minute: int = env_field(
        30,
        "CHAT_RATE_LIMIT_PER_MINUTE",
        description="Burst limit per account on the streaming endpoint; 0 disables it.",
    )
    max_messages_per_request: int = env_field(200, "MAX_MESSAGES_PER_REQUEST")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Field name to environment variable name."""
        names = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra
            declared = extra.get("env") if isinstance(extra, dict) else None
            names[name] = declared or name.upper()
        return names

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Real environment first, then ``env_file``, then field defaults."""
        sources = ({**dotenv_values(env_file)}, os.environ)
        values = {}
        for name, env_name in cls.env_names().items():
            for source in reversed(sources):
                if env_name in source:
                    values[name] = source[env_name]
                    break
        return cls(**values)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("reasoning_effort")
    @classmethod
    def _validate_reasoning_effort(cls, value: str) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in _REASONING_EFFORTS:
            raise ValueError(
                f"REASONING_EFFORT must be one of {sorted(_REASONING_EFFORTS)}"
            )
        return normalized

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _shared_signing_secret(
            Path(os.getenv("SHARED_FS_ROOT", "/srv/chatgateway"))
        )


_MIN_SECRET_CHARS = 32


def _read_signing_secret(path: Path) -> str | None:
    if not path.is_file() or path.is_symlink():
        return None
    try:
        stored = path.read_text().strip()
    except OSError as exc:
        logger.error("jwt_secret_unreadable", error=str(exc), path=str(path))
        return None
    return stored if len(stored) >= _MIN_SECRET_CHARS else None


def _shared_signing_secret(fs_root: Path) -> str:
    """Load the signing secret kept under the shared root, creating it once.

    Every worker mounting the same root verifies the same tokens, and tokens
    stay valid across restarts. The file is written with mode 0600 through a
    temp file and rename.
    """
    target = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_root_unusable", error=str(exc), path=str(fs_root))

    existing = _read_signing_secret(target)
    if existing:
        return existing

    fresh = secrets.token_urlsafe(64)
    fd, staging = -1, ""
    try:
        fd, staging = tempfile.mkstemp(dir=fs_root, prefix=".jwt_secret_", suffix=".tmp")
        os.fchmod(fd, 0o600)
        os.write(fd, fresh.encode())
        os.close(fd)
        fd = -1
        os.replace(staging, target)
    except OSError as exc:
        if fd >= 0:
            os.close(fd)
        if staging:
            Path(staging).unlink(missing_ok=True)
        logger.error("jwt_secret_not_persisted", error=str(exc), path=str(target))
        raise RuntimeError(
            "No JWT_SECRET configured and SHARED_FS_ROOT is not writable"
        ) from exc
    return fresh


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
