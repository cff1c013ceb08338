from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

from sessionward.config import NEVER_EXPIRE
from sessionward.logging import get_logger

logger = get_logger(__name__)


class PermissionSource(Protocol):
    """Supplies the authorization data attached to an account."""

    def get_roles(self, account_id: str) -> List[str]: ...

    def get_permissions(self, account_id: str) -> List[str]: ...

    def get_disabled_services(self, account_id: str) -> Set[str]: ...


class StaticPermissionSource:
    """In-memory roles, permissions and time-boxed service disables."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._roles: Dict[str, List[str]] = {}
        self._permissions: Dict[str, List[str]] = {}
        # account -> service -> epoch seconds when the disable lapses (None = forever)
        self._disabled: Dict[str, Dict[str, Optional[float]]] = {}

    @staticmethod
    def _merge(existing: List[str], values: Iterable[str]) -> List[str]:
        merged = list(existing)
        for value in values:
            if value not in merged:
                merged.append(value)
        return merged

    def grant_roles(self, account_id: str, *roles: str) -> None:
        with self._lock:
            self._roles[account_id] = self._merge(self._roles.get(account_id, []), roles)

    def revoke_role(self, account_id: str, role: str) -> None:
        with self._lock:
            roles = self._roles.get(account_id, [])
            if role in roles:
                roles.remove(role)

    def grant_permissions(self, account_id: str, *permissions: str) -> None:
        with self._lock:
            self._permissions[account_id] = self._merge(
                self._permissions.get(account_id, []), permissions
            )

    def get_roles(self, account_id: str) -> List[str]:
        with self._lock:
            return list(self._roles.get(account_id, []))

    def get_permissions(self, account_id: str) -> List[str]:
        with self._lock:
            return list(self._permissions.get(account_id, []))

    def disable(
        self, account_id: str, service: str = "login", ttl_seconds: int = NEVER_EXPIRE
    ) -> None:
        """Disable one service for an account, forever when ttl is -1."""
        if ttl_seconds != NEVER_EXPIRE and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive or -1")
        until = None if ttl_seconds == NEVER_EXPIRE else self._clock() + ttl_seconds
        with self._lock:
            self._disabled.setdefault(account_id, {})[service] = until
        logger.info(
            "service_disabled",
            account_id=account_id,
            service=service,
            ttl_seconds=ttl_seconds,
        )

    def untie_disable(self, account_id: str, service: str = "login") -> None:
        with self._lock:
            services = self._disabled.get(account_id, {})
            services.pop(service, None)
        logger.info("service_enabled", account_id=account_id, service=service)

    def _live_disables(self, account_id: str) -> Dict[str, Optional[float]]:
        """Drop lapsed entries; caller must hold the lock."""
        services = self._disabled.get(account_id, {})
        now = self._clock()
        lapsed = [s for s, until in services.items() if until is not None and until <= now]
        for service in lapsed:
            services.pop(service, None)
        return services

    def get_disabled_services(self, account_id: str) -> Set[str]:
        with self._lock:
            return set(self._live_disables(account_id))

    def is_disabled(self, account_id: str, service: str = "login") -> bool:
        return service in self.get_disabled_services(account_id)

    def disable_remaining(self, account_id: str, service: str = "login") -> Optional[int]:
        """Seconds left on a disable: -1 for permanent, None if not disabled."""
        with self._lock:
            services = self._live_disables(account_id)
            if service not in services:
                return None
            until = services[service]
        if until is None:
            return NEVER_EXPIRE
        return max(0, int(until - self._clock()))


__all__ = ["PermissionSource", "StaticPermissionSource"]
