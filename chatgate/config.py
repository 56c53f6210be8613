from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatgate.logging import get_logger

logger = get_logger(__name__)

# Allow-listed upload types grouped by how the context assembler consumes them.
INLINE_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "audio/mpeg",
        "audio/wav",
        "audio/ogg",
        "audio/mp4",
        "audio/webm",
        "video/mp4",
        "video/webm",
        "video/quicktime",
        "video/x-msvideo",
        "application/pdf",
    }
)
TEXT_MIME_TYPES = frozenset(
    {
        "text/plain",
        "text/csv",
        "text/markdown",
        "text/xml",
        "application/json",
        "application/xml",
        "image/svg+xml",
    }
)
OFFICE_MIME_TYPES = frozenset(
    {
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "application/msword",
        "application/vnd.ms-excel",
        "application/vnd.ms-powerpoint",
    }
)
ALLOWED_ATTACHMENT_MIME_TYPES = INLINE_MIME_TYPES | TEXT_MIME_TYPES | OFFICE_MIME_TYPES

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
MAX_MESSAGE_CHARS = 10000

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, accurate and friendly assistant. Answer clearly, keep "
    "responses well structured, and say so when you are unsure."
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat gateway."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chatgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/chatgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic completions and in-memory fallbacks for tests",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("chatgate", "JWT_ISSUER")
    jwt_audience: str = env_field("chatgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Tier limits. A limit of 0 means unbounded.
    quota_guest_messages: int = env_field(5, "QUOTA_GUEST_MESSAGES")
    quota_user_daily_messages: int = env_field(100, "QUOTA_USER_DAILY_MESSAGES")
    quota_admin_daily_messages: int = env_field(0, "QUOTA_ADMIN_DAILY_MESSAGES")
    quota_guest_file_uploads: int = env_field(5, "QUOTA_GUEST_FILE_UPLOADS")
    quota_user_daily_file_uploads: int = env_field(50, "QUOTA_USER_DAILY_FILE_UPLOADS")
    quota_admin_daily_file_uploads: int = env_field(
        1000, "QUOTA_ADMIN_DAILY_FILE_UPLOADS"
    )

    guest_session_ttl_hours: int = env_field(24, "GUEST_SESSION_TTL_HOURS")
    guest_cleanup_interval_seconds: int = env_field(
        3600, "GUEST_CLEANUP_INTERVAL_SECONDS"
    )

    chat_rate_limit_per_minute: int = env_field(30, "CHAT_RATE_LIMIT_PER_MINUTE")
    chat_rate_limit_window_seconds: int = env_field(
        60, "CHAT_RATE_LIMIT_WINDOW_SECONDS"
    )

    model_path: str = env_field("gpt-4o-mini", "MODEL_PATH")
    allowed_models: list[str] = env_field(
        ["gpt-4o-mini", "gpt-4o", "gemini-1.5-flash", "gemini-1.5-pro"],
        "ALLOWED_MODELS",
    )
    completion_api_key: str | None = env_field(None, "COMPLETION_API_KEY")
    completion_base_url: str | None = env_field(None, "COMPLETION_BASE_URL")
    completion_timeout_seconds: float = env_field(60.0, "COMPLETION_TIMEOUT_SECONDS")
    default_temperature: float = env_field(0.7, "DEFAULT_TEMPERATURE")
    default_max_tokens: int = env_field(4096, "DEFAULT_MAX_TOKENS")
    system_prompt: str = env_field(DEFAULT_SYSTEM_PROMPT, "SYSTEM_PROMPT")

    history_limit: int = env_field(20, "HISTORY_LIMIT")
    attachment_text_limit: int = env_field(5000, "ATTACHMENT_TEXT_LIMIT")
    attachment_fetch_timeout_seconds: float = env_field(
        10.0, "ATTACHMENT_FETCH_TIMEOUT_SECONDS"
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

    @field_validator("allowed_models", mode="before")
    @classmethod
    def _split_models(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("completion_timeout_seconds")
    @classmethod
    def _bounded_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("COMPLETION_TIMEOUT_SECONDS must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/chatgate"))
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
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def message_limit_for(self, tier: str) -> int | None:
        """Return the message limit for a tier, ``None`` when unbounded."""

        limit = {
            "guest": self.quota_guest_messages,
            "user": self.quota_user_daily_messages,
            "admin": self.quota_admin_daily_messages,
        }.get(tier, self.quota_user_daily_messages)
        return limit if limit > 0 else None

    def file_limit_for(self, tier: str) -> int | None:
        limit = {
            "guest": self.quota_guest_file_uploads,
            "user": self.quota_user_daily_file_uploads,
            "admin": self.quota_admin_daily_file_uploads,
        }.get(tier, self.quota_user_daily_file_uploads)
        return limit if limit > 0 else None


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
