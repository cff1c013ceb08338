"""Contracts and helpers shared by the memory and redis storage backends.

Both backends implement the same two protocols so the session service can be
exercised against the in-memory fake and deployed against Redis unchanged.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sessionward.storage.models import SessionRecord, SessionStatus


class TokenStore(Protocol):
    def put(
        self, token: str, record: SessionRecord, ttl_seconds: Optional[int]
    ) -> None: ...

    def get(self, token: str) -> Optional[SessionRecord]: ...

    def delete(self, token: str) -> bool: ...

    def mark_status(
        self,
        token: str,
        status: SessionStatus,
        *,
        expect: Optional[SessionStatus] = None,
        changed_at: Optional[datetime] = None,
    ) -> SessionRecord: ...

    def touch(
        self,
        token: str,
        *,
        touched_at: datetime,
        expires_at: Optional[datetime],
        ttl_seconds: Optional[int],
        timeout_seconds: Optional[int] = None,
    ) -> SessionRecord: ...

    def update_meta(
        self,
        token: str,
        meta: Optional[Dict[str, Any]] = None,
        safe_until: Optional[Dict[str, Optional[float]]] = None,
    ) -> SessionRecord: ...


class AccountIndex(Protocol):
    def register(
        self,
        account_id: str,
        device: str,
        token: str,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[str]: ...

    def extend_expiry(self, account_id: str, ttl_seconds: Optional[int]) -> None: ...

    def lookup(self, account_id: str) -> List[Tuple[str, str]]: ...

    def lookup_device(self, account_id: str, device: str) -> Optional[str]: ...

    def unregister(
        self, account_id: str, device: str, token: Optional[str] = None
    ) -> bool: ...

    def get_account_data(self, account_id: str) -> Dict[str, Any]: ...

    def update_account_data(self, account_id: str, updates: Dict[str, Any]) -> None: ...

    def clear_account_data(self, account_id: str) -> bool: ...

    def slot_lock(self, account_id: str, device: str) -> AbstractContextManager: ...


def normalize_account_id(account_id: Any) -> str:
    """Account ids may arrive as ints from the HTTP layer; keys are strings."""
    if account_id is None:
        raise ValueError("account_id is required")
    normalized = str(account_id).strip()
    if not normalized:
        raise ValueError("account_id must not be blank")
    return normalized


def apply_meta_updates(
    record: SessionRecord,
    meta: Optional[Dict[str, Any]],
    safe_until: Optional[Dict[str, Optional[float]]],
) -> None:
    """Merge updates into a record in place; a ``None`` value removes the key."""
    for key, value in (meta or {}).items():
        if value is None:
            record.meta.pop(key, None)
        else:
            record.meta[key] = value
    for service, until in (safe_until or {}).items():
        if until is None:
            record.safe_until.pop(service, None)
        else:
            record.safe_until[service] = float(until)


def token_key(prefix: str, token: str) -> str:
    return f"{prefix}:token:{token}"


def slots_key(prefix: str, account_id: str) -> str:
    return f"{prefix}:account:{account_id}:slots"


def order_key(prefix: str, account_id: str) -> str:
    return f"{prefix}:account:{account_id}:order"


def account_session_key(prefix: str, account_id: str) -> str:
    return f"{prefix}:account:{account_id}:session"


def lock_key(prefix: str, account_id: str, device: str) -> str:
    return f"{prefix}:lock:{account_id}:{device}"


__all__ = [
    "TokenStore",
    "AccountIndex",
    "normalize_account_id",
    "apply_meta_updates",
    "token_key",
    "slots_key",
    "order_key",
    "account_session_key",
    "lock_key",
]
