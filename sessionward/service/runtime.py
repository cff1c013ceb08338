from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis import Redis

from sessionward.config import Settings, get_settings, reset_settings_cache
from sessionward.logging import get_logger
from sessionward.service.auth import SessionService
from sessionward.service.permissions import StaticPermissionSource
from sessionward.storage.errors import StoreUnavailable
from sessionward.storage.memory import MemoryAccountIndex, MemoryTokenStore
from sessionward.storage.redis_store import RedisAccountIndex, RedisTokenStore, connect

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store backends and the session service for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.redis: Optional[Redis] = None
        self.store: Union[MemoryTokenStore, RedisTokenStore]
        self.index: Union[MemoryAccountIndex, RedisAccountIndex]

        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.use_memory_store:
            try:
                client = connect(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                )
                store = RedisTokenStore(client, prefix=self.settings.key_prefix)
                store.verify_connection()
                self.redis = client
                self.store = store
                self.index = RedisAccountIndex(
                    client,
                    prefix=self.settings.key_prefix,
                    lock_timeout_seconds=self.settings.slot_lock_timeout_seconds,
                )
            except StoreUnavailable as exc:
                redis_error = exc

        if self.redis is None:
            if (
                not self.settings.use_memory_store
                and not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for shared sessions; start Redis or set "
                    "USE_MEMORY_STORE=true, TEST_MODE=true or "
                    "ALLOW_REDIS_FALLBACK_DEV=true for a single-process store."
                ) from redis_error

            if not self.settings.use_memory_store:
                fallback_mode = (
                    "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
                )
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_url_missing",
                    message=(
                        f"Running without Redis under {fallback_mode}; sessions live "
                        "in this process only."
                    ),
                    mode=fallback_mode,
                )
            self.store = MemoryTokenStore()
            self.index = MemoryAccountIndex(
                lock_timeout_seconds=self.settings.slot_lock_timeout_seconds
            )

        self.permissions = StaticPermissionSource()
        self.sessions = SessionService(
            self.store,
            self.index,
            self.settings,
            permissions=self.permissions,
        )
        logger.info(
            "runtime_init_completed",
            store_type="redis" if self.redis is not None else "memory",
        )

    def close(self) -> None:
        if self.redis is not None:
            self.redis.close()
            self.redis = None


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
