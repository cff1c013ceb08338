from __future__ import annotations

import json
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from redis import Redis
from redis.exceptions import LockError, RedisError

from sessionward.logging import get_logger
from sessionward.storage.common import (
    account_session_key,
    apply_meta_updates,
    lock_key,
    order_key,
    slots_key,
    token_key,
)
from sessionward.storage.errors import RecordNotFound, StoreUnavailable
from sessionward.storage.models import SessionRecord, SessionStatus, utcnow

logger = get_logger(__name__)

# WatchError is retried inside client.transaction; everything else the
# server or connection raises surfaces as StoreUnavailable
_UNAVAILABLE = (RedisError,)


def connect(redis_url: str, *, socket_timeout: float = 5.0) -> Redis:
    """Build a client with explicit timeouts so no call blocks indefinitely."""
    return Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except _UNAVAILABLE as exc:
        logger.error(
            "store_unavailable",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise StoreUnavailable(
            f"redis unavailable during {operation}", {"operation": operation}
        ) from exc


def _redis_ttl(ttl_seconds: Optional[int]) -> Optional[int]:
    """Redis rejects zero or negative expiries; clamp to at least 1 second."""
    if ttl_seconds is None:
        return None
    return max(1, int(ttl_seconds))


class RedisTokenStore:
    """Token records stored as JSON strings under ``<prefix>:token:<token>``.

    Read-modify-write operations run in WATCH/MULTI transactions so each token
    is updated atomically without any cross-key lock.
    """

    def __init__(self, client: Redis, *, prefix: str = "sessionward") -> None:
        self.client = client
        self.prefix = prefix

    def verify_connection(self) -> None:
        with _translate_errors("ping"):
            self.client.ping()

    def _key(self, token: str) -> str:
        return token_key(self.prefix, token)

    @staticmethod
    def _dumps(record: SessionRecord) -> str:
        return json.dumps(record.to_dict(), separators=(",", ":"))

    @staticmethod
    def _loads(raw: str) -> SessionRecord:
        return SessionRecord.from_dict(json.loads(raw))

    def put(
        self, token: str, record: SessionRecord, ttl_seconds: Optional[int]
    ) -> None:
        with _translate_errors("put"):
            self.client.set(
                self._key(token), self._dumps(record), ex=_redis_ttl(ttl_seconds)
            )

    def get(self, token: str) -> Optional[SessionRecord]:
        if not token:
            return None
        with _translate_errors("get"):
            raw = self.client.get(self._key(token))
        return self._loads(raw) if raw else None

    def delete(self, token: str) -> bool:
        with _translate_errors("delete"):
            return bool(self.client.delete(self._key(token)))

    def _update(
        self,
        token: str,
        operation: str,
        mutate: Callable[[SessionRecord], bool],
        *,
        ttl_seconds: Optional[int] = None,
        reset_ttl: bool = False,
    ) -> SessionRecord:
        """Apply ``mutate`` under WATCH; write back only when it reports a change.

        Without ``reset_ttl`` the remaining expiry is preserved via KEEPTTL.
        """
        key = self._key(token)

        def _txn(pipe) -> SessionRecord:
            raw = pipe.get(key)
            if raw is None:
                raise RecordNotFound("token not found", {"operation": operation})
            record = self._loads(raw)
            if not mutate(record):
                return record
            pipe.multi()
            if reset_ttl:
                pipe.set(key, self._dumps(record), ex=_redis_ttl(ttl_seconds))
            else:
                pipe.set(key, self._dumps(record), keepttl=True)
            return record

        with _translate_errors(operation):
            return self.client.transaction(_txn, key, value_from_callable=True)

    def mark_status(
        self,
        token: str,
        status: SessionStatus,
        *,
        expect: Optional[SessionStatus] = None,
        changed_at: Optional[datetime] = None,
    ) -> SessionRecord:
        def _mutate(record: SessionRecord) -> bool:
            if record.status == status:
                return False
            if expect is not None and record.status != expect:
                return False
            record.status = status
            record.status_changed_at = changed_at or utcnow()
            return True

        return self._update(token, "mark_status", _mutate)

    def touch(
        self,
        token: str,
        *,
        touched_at: datetime,
        expires_at: Optional[datetime],
        ttl_seconds: Optional[int],
        timeout_seconds: Optional[int] = None,
    ) -> SessionRecord:
        def _mutate(record: SessionRecord) -> bool:
            record.last_touched_at = touched_at
            record.expires_at = expires_at
            if timeout_seconds is not None:
                record.timeout_seconds = timeout_seconds
            return True

        return self._update(
            token, "touch", _mutate, ttl_seconds=ttl_seconds, reset_ttl=True
        )

    def update_meta(
        self,
        token: str,
        meta: Optional[Dict[str, Any]] = None,
        safe_until: Optional[Dict[str, Optional[float]]] = None,
    ) -> SessionRecord:
        def _mutate(record: SessionRecord) -> bool:
            apply_meta_updates(record, meta, safe_until)
            return True

        return self._update(token, "update_meta", _mutate)


class RedisAccountIndex:
    """Device slots per account.

    ``<prefix>:account:<id>:slots`` is a hash of device -> token and
    ``<prefix>:account:<id>:order`` a sorted set scoring each device by the
    time of its latest login, so iteration runs from the oldest login to the
    newest. ``<prefix>:account:<id>:session`` is a hash of JSON values shared
    by every device of the account.

    The three keys expire together no earlier than the longest-lived token
    registered in them, so slots of naturally expired tokens do not linger.
    """

    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = "sessionward",
        lock_timeout_seconds: float = 5.0,
        lock_ttl_seconds: float = 30.0,
    ) -> None:
        self.client = client
        self.prefix = prefix
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_ttl_seconds = lock_ttl_seconds

    def _account_keys(self, account_id: str) -> Tuple[str, str, str]:
        return (
            slots_key(self.prefix, account_id),
            order_key(self.prefix, account_id),
            account_session_key(self.prefix, account_id),
        )

    def register(
        self,
        account_id: str,
        device: str,
        token: str,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[str]:
        keys = self._account_keys(account_id)
        slots, order, _ = keys

        def _txn(pipe) -> Optional[str]:
            previous = pipe.hget(slots, device)
            if previous == token:
                return None
            current_ttl = pipe.ttl(slots)
            pipe.multi()
            pipe.hset(slots, device, token)
            pipe.zadd(order, {device: time.time()})
            self._queue_expiry(pipe, keys, current_ttl, ttl_seconds, absent_ok=True)
            return previous

        with _translate_errors("register"):
            return self.client.transaction(_txn, slots, value_from_callable=True)

    @staticmethod
    def _queue_expiry(pipe, keys, current_ttl, ttl_seconds, *, absent_ok: bool) -> None:
        """Never shorten the account keys below the longest registered token.

        ``current_ttl`` is -2 when the key is absent and -1 when it is already
        persistent because of a never-expiring token.
        """
        if current_ttl == -2 and not absent_ok:
            return
        if ttl_seconds is None:
            for key in keys:
                pipe.persist(key)
        elif current_ttl == -2 or 0 <= current_ttl < ttl_seconds:
            for key in keys:
                pipe.expire(key, _redis_ttl(ttl_seconds))

    def extend_expiry(self, account_id: str, ttl_seconds: Optional[int]) -> None:
        """Keep existing account keys alive for a token whose TTL was reset."""
        keys = self._account_keys(account_id)
        slots = keys[0]

        def _txn(pipe) -> None:
            current_ttl = pipe.ttl(slots)
            pipe.multi()
            self._queue_expiry(pipe, keys, current_ttl, ttl_seconds, absent_ok=False)

        with _translate_errors("extend_expiry"):
            self.client.transaction(_txn, slots)

    def lookup(self, account_id: str) -> List[Tuple[str, str]]:
        slots = slots_key(self.prefix, account_id)
        order = order_key(self.prefix, account_id)
        with _translate_errors("lookup"):
            pipe = self.client.pipeline(transaction=True)
            pipe.zrange(order, 0, -1)
            pipe.hgetall(slots)
            devices, mapping = pipe.execute()
        return [(device, mapping[device]) for device in devices if device in mapping]

    def lookup_device(self, account_id: str, device: str) -> Optional[str]:
        with _translate_errors("lookup_device"):
            return self.client.hget(slots_key(self.prefix, account_id), device)

    def unregister(
        self, account_id: str, device: str, token: Optional[str] = None
    ) -> bool:
        slots = slots_key(self.prefix, account_id)
        order = order_key(self.prefix, account_id)

        def _txn(pipe) -> bool:
            current = pipe.hget(slots, device)
            if current is None or (token is not None and current != token):
                return False
            pipe.multi()
            pipe.hdel(slots, device)
            pipe.zrem(order, device)
            return True

        with _translate_errors("unregister"):
            return self.client.transaction(_txn, slots, value_from_callable=True)

    def get_account_data(self, account_id: str) -> Dict[str, Any]:
        with _translate_errors("get_account_data"):
            raw = self.client.hgetall(account_session_key(self.prefix, account_id))
        return {key: json.loads(value) for key, value in raw.items()}

    def update_account_data(self, account_id: str, updates: Dict[str, Any]) -> None:
        """Merge ``updates``; a ``None`` value removes the key."""
        slots, _, session = self._account_keys(account_id)
        stored = {k: json.dumps(v) for k, v in updates.items() if v is not None}
        removed = [k for k, v in updates.items() if v is None]
        with _translate_errors("update_account_data"):
            pipe = self.client.pipeline(transaction=True)
            if stored:
                pipe.hset(session, mapping=stored)
            if removed:
                pipe.hdel(session, *removed)
            pipe.ttl(slots)
            *_, slots_ttl = pipe.execute()
            if slots_ttl > 0:
                self.client.expire(session, slots_ttl)

    def clear_account_data(self, account_id: str) -> bool:
        with _translate_errors("clear_account_data"):
            return bool(
                self.client.delete(account_session_key(self.prefix, account_id))
            )

    @contextmanager
    def slot_lock(self, account_id: str, device: str) -> Iterator[None]:
        lock = self.client.lock(
            lock_key(self.prefix, account_id, device),
            timeout=self.lock_ttl_seconds,
            blocking_timeout=self.lock_timeout_seconds,
        )
        with _translate_errors("slot_lock"):
            acquired = lock.acquire()
        if not acquired:
            logger.error("slot_lock_timeout", account_id=account_id, device=device)
            raise StoreUnavailable(
                "timed out waiting for device slot lock",
                {"account_id": account_id, "device": device},
            )
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # lock outlived its TTL; another holder may already own the slot
                logger.warning(
                    "slot_lock_expired", account_id=account_id, device=device
                )
            except _UNAVAILABLE as exc:
                logger.error(
                    "slot_lock_release_failed",
                    account_id=account_id,
                    device=device,
                    error=str(exc),
                )


__all__ = ["RedisTokenStore", "RedisAccountIndex", "connect"]
