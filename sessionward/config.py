from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)

# Timeout value meaning "never expires"
NEVER_EXPIRE = -1


class TokenStyle(str, Enum):
    """Formats for newly issued token values."""

    UUID = "uuid"
    SIMPLE_UUID = "simple-uuid"
    RANDOM_32 = "random-32"
    RANDOM_64 = "random-64"
    RANDOM_128 = "random-128"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, expiry and the backing store."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Upper bound in seconds for any single Redis command",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    key_prefix: str = env_field(
        "sessionward", "SESSION_KEY_PREFIX", description="Namespace for store keys"
    )
    token_name: str = env_field(
        "satoken",
        "SESSION_TOKEN_NAME",
        description="Header/cookie name the HTTP layer reads the token from",
    )
    token_style: TokenStyle = env_field(TokenStyle.UUID, "SESSION_TOKEN_STYLE")
    timeout_seconds: int = env_field(
        60 * 60 * 24 * 30,
        "SESSION_TIMEOUT_SECONDS",
        description="Token lifetime; -1 means the token never expires",
    )
    active_timeout_seconds: int = env_field(
        NEVER_EXPIRE,
        "SESSION_ACTIVE_TIMEOUT_SECONDS",
        description="Idle timeout between two checks; -1 disables it",
    )
    sliding_expiration: bool = env_field(
        False,
        "SESSION_SLIDING_EXPIRATION",
        description="Renew the full timeout on every successful check",
    )
    expired_retention_seconds: int = env_field(
        60 * 10,
        "SESSION_EXPIRED_RETENTION_SECONDS",
        description="How long an elapsed record is kept so checks report expired",
    )
    default_device: str = env_field("default-device", "SESSION_DEFAULT_DEVICE")
    is_concurrent: bool = env_field(
        True,
        "SESSION_IS_CONCURRENT",
        description="Allow one account to be online on several devices at once",
    )
    max_login_count: int = env_field(
        NEVER_EXPIRE,
        "SESSION_MAX_LOGIN_COUNT",
        description="Maximum device slots per account; -1 for unlimited",
    )
    safe_timeout_seconds: int = env_field(
        120, "SESSION_SAFE_TIMEOUT_SECONDS", description="Default safe-mode window"
    )
    slot_lock_timeout_seconds: float = env_field(
        5.0,
        "SESSION_SLOT_LOCK_TIMEOUT_SECONDS",
        description="Maximum wait for a device slot lock before failing",
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

    @field_validator("token_style")
    @classmethod
    def _validate_token_style(cls, value: TokenStyle) -> TokenStyle:
        return TokenStyle(value)

    @field_validator("timeout_seconds", "active_timeout_seconds", "max_login_count")
    @classmethod
    def _validate_limit(cls, value: int) -> int:
        if value == NEVER_EXPIRE or value > 0:
            return value
        raise ValueError("must be a positive number or -1")

    @field_validator(
        "expired_retention_seconds", "safe_timeout_seconds", mode="after"
    )
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("slot_lock_timeout_seconds", "redis_socket_timeout")
    @classmethod
    def _validate_wait(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("default_device", "key_prefix", "token_name")
    @classmethod
    def _validate_label(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @model_validator(mode="after")
    def _warn_idle_without_touch(self) -> "Settings":
        if (
            self.active_timeout_seconds != NEVER_EXPIRE
            and self.timeout_seconds != NEVER_EXPIRE
            and self.active_timeout_seconds > self.timeout_seconds
        ):
            logger.warning(
                "active_timeout_exceeds_timeout",
                active_timeout_seconds=self.active_timeout_seconds,
                timeout_seconds=self.timeout_seconds,
            )
        return self


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
