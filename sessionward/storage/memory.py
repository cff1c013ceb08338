from __future__ import annotations

import copy
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from sessionward.logging import get_logger
from sessionward.storage.common import apply_meta_updates
from sessionward.storage.errors import RecordNotFound, StoreUnavailable
from sessionward.storage.models import SessionRecord, SessionStatus, utcnow

_DEFAULT_STRIPES = 64


class _StripedLocks:
    """Fixed pool of locks selected by key hash.

    Mutations on one key serialize; unrelated keys rarely contend and there is
    no process-wide lock.
    """

    def __init__(self, stripes: int = _DEFAULT_STRIPES, *, reentrant: bool = False):
        factory = threading.RLock if reentrant else threading.Lock
        self._locks = [factory() for _ in range(stripes)]

    def for_key(self, key: Any):
        return self._locks[hash(key) % len(self._locks)]


class MemoryTokenStore:
    """In-process token store with lazy physical expiry."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        stripes: int = _DEFAULT_STRIPES,
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        # token -> (record, physical deadline in epoch seconds or None)
        self._records: Dict[str, Tuple[SessionRecord, Optional[float]]] = {}
        self._locks = _StripedLocks(stripes)

    def _deadline(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + max(0, ttl_seconds)

    def _live_entry(
        self, token: str
    ) -> Optional[Tuple[SessionRecord, Optional[float]]]:
        """Return the stored entry, evicting it if physically expired.

        Caller must hold the token's stripe lock.
        """
        entry = self._records.get(token)
        if entry is None:
            return None
        _, deadline = entry
        if deadline is not None and self._clock() >= deadline:
            self._records.pop(token, None)
            return None
        return entry

    def put(
        self, token: str, record: SessionRecord, ttl_seconds: Optional[int]
    ) -> None:
        with self._locks.for_key(token):
            self._records[token] = (record.copy(), self._deadline(ttl_seconds))

    def get(self, token: str) -> Optional[SessionRecord]:
        if not token:
            return None
        with self._locks.for_key(token):
            entry = self._live_entry(token)
            return entry[0].copy() if entry else None

    def delete(self, token: str) -> bool:
        with self._locks.for_key(token):
            existed = self._live_entry(token) is not None
            self._records.pop(token, None)
            return existed

    def mark_status(
        self,
        token: str,
        status: SessionStatus,
        *,
        expect: Optional[SessionStatus] = None,
        changed_at: Optional[datetime] = None,
    ) -> SessionRecord:
        with self._locks.for_key(token):
            entry = self._live_entry(token)
            if entry is None:
                raise RecordNotFound("token not found", {"status": status.value})
            record, deadline = entry
            if record.status == status:
                return record.copy()
            if expect is not None and record.status != expect:
                return record.copy()
            record.status = status
            record.status_changed_at = changed_at or utcnow()
            self._records[token] = (record, deadline)
            return record.copy()

    def touch(
        self,
        token: str,
        *,
        touched_at: datetime,
        expires_at: Optional[datetime],
        ttl_seconds: Optional[int],
        timeout_seconds: Optional[int] = None,
    ) -> SessionRecord:
        with self._locks.for_key(token):
            entry = self._live_entry(token)
            if entry is None:
                raise RecordNotFound("token not found")
            record, _ = entry
            record.last_touched_at = touched_at
            record.expires_at = expires_at
            if timeout_seconds is not None:
                record.timeout_seconds = timeout_seconds
            self._records[token] = (record, self._deadline(ttl_seconds))
            return record.copy()

    def update_meta(
        self,
        token: str,
        meta: Optional[Dict[str, Any]] = None,
        safe_until: Optional[Dict[str, Optional[float]]] = None,
    ) -> SessionRecord:
        with self._locks.for_key(token):
            entry = self._live_entry(token)
            if entry is None:
                raise RecordNotFound("token not found")
            record, deadline = entry
            apply_meta_updates(record, meta, safe_until)
            self._records[token] = (record, deadline)
            return record.copy()

    def __len__(self) -> int:
        return len(self._records)


class MemoryAccountIndex:
    """(account_id, device) -> token slots, kept in login order."""

    def __init__(
        self,
        *,
        lock_timeout_seconds: float = 5.0,
        stripes: int = _DEFAULT_STRIPES,
    ) -> None:
        self.logger = get_logger(__name__)
        self.lock_timeout_seconds = lock_timeout_seconds
        # insertion order is login order: the oldest login comes first
        self._slots: Dict[str, Dict[str, str]] = {}
        # account -> data shared by every device of the account
        self._account_data: Dict[str, Dict[str, Any]] = {}
        self._index_locks = _StripedLocks(stripes)
        self._slot_locks = _StripedLocks(stripes, reentrant=True)

    def register(
        self,
        account_id: str,
        device: str,
        token: str,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[str]:
        """Record the slot and return the token it displaced.

        Memory slots carry no expiry, so ``ttl_seconds`` is ignored; slots of
        vanished tokens are pruned by ``SessionService.list_sessions``.
        """
        with self._index_locks.for_key(account_id):
            devices = self._slots.setdefault(account_id, {})
            previous = devices.get(device)
            if previous != token:
                # a new login moves the slot to the end of the order
                devices.pop(device, None)
                devices[device] = token
            return previous if previous != token else None

    def extend_expiry(self, account_id: str, ttl_seconds: Optional[int]) -> None:
        """Memory slots carry no expiry."""

    def lookup(self, account_id: str) -> List[Tuple[str, str]]:
        with self._index_locks.for_key(account_id):
            return list(self._slots.get(account_id, {}).items())

    def lookup_device(self, account_id: str, device: str) -> Optional[str]:
        with self._index_locks.for_key(account_id):
            return self._slots.get(account_id, {}).get(device)

    def unregister(
        self, account_id: str, device: str, token: Optional[str] = None
    ) -> bool:
        with self._index_locks.for_key(account_id):
            devices = self._slots.get(account_id)
            if not devices or device not in devices:
                return False
            if token is not None and devices[device] != token:
                return False
            del devices[device]
            if not devices:
                self._slots.pop(account_id, None)
            return True

    def get_account_data(self, account_id: str) -> Dict[str, Any]:
        with self._index_locks.for_key(account_id):
            return copy.deepcopy(self._account_data.get(account_id, {}))

    def update_account_data(self, account_id: str, updates: Dict[str, Any]) -> None:
        with self._index_locks.for_key(account_id):
            data = self._account_data.setdefault(account_id, {})
            for key, value in updates.items():
                if value is None:
                    data.pop(key, None)
                else:
                    data[key] = copy.deepcopy(value)
            if not data:
                self._account_data.pop(account_id, None)

    def clear_account_data(self, account_id: str) -> bool:
        with self._index_locks.for_key(account_id):
            return self._account_data.pop(account_id, None) is not None

    @contextmanager
    def slot_lock(self, account_id: str, device: str) -> Iterator[None]:
        lock = self._slot_locks.for_key((account_id, device))
        if not lock.acquire(timeout=self.lock_timeout_seconds):
            self.logger.error(
                "slot_lock_timeout", account_id=account_id, device=device
            )
            raise StoreUnavailable(
                "timed out waiting for device slot lock",
                {"account_id": account_id, "device": device},
            )
        try:
            yield
        finally:
            lock.release()


__all__ = ["MemoryTokenStore", "MemoryAccountIndex"]
