from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sessionward.config import NEVER_EXPIRE, Settings, TokenStyle
from sessionward.logging import get_logger
from sessionward.service.errors import ForbiddenError
from sessionward.service.guard import (
    AuthorizationContext,
    Decision,
    Requirement,
    contains_bypass,
    evaluate as evaluate_requirement,
    validate as validate_requirement,
)
from sessionward.service.permissions import PermissionSource
from sessionward.service.state import (
    CheckResult,
    InvalidReason,
    Transition,
    can_transition,
    evaluate,
)
from sessionward.storage.common import AccountIndex, TokenStore, normalize_account_id
from sessionward.storage.errors import RecordNotFound
from sessionward.storage.models import SessionRecord, SessionStatus, utcnow

logger = get_logger(__name__)

_ALPHANUMERIC = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
# lock key used for every device when an account may only be online once
_ALL_DEVICES = "*"
_EVENTS = {
    Transition.LOGOUT: "session_logged_out",
    Transition.KICKOUT: "session_kicked",
    Transition.REPLACE: "session_replaced",
}


class SessionService:
    """Token issuance, invalidation and checks for multi-device logins.

    All state lives behind the token store and account index; the service keeps
    none of its own and is safe to share between threads.
    """

    def __init__(
        self,
        store: TokenStore,
        index: AccountIndex,
        settings: Settings,
        *,
        permissions: Optional[PermissionSource] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.index = index
        self.settings = settings
        self.permissions = permissions
        self._clock = clock
        self.logger = logger

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock()

    def _generate_token(self) -> str:
        style = self.settings.token_style
        if style == TokenStyle.SIMPLE_UUID:
            return uuid.uuid4().hex
        if style == TokenStyle.RANDOM_32:
            return self._random_token(32)
        if style == TokenStyle.RANDOM_64:
            return self._random_token(64)
        if style == TokenStyle.RANDOM_128:
            return self._random_token(128)
        return str(uuid.uuid4())

    @staticmethod
    def _random_token(length: int) -> str:
        return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))

    def _timeout(self, timeout_seconds: Optional[int]) -> int:
        timeout = self.settings.timeout_seconds if timeout_seconds is None else timeout_seconds
        if timeout != NEVER_EXPIRE and timeout < 0:
            raise ValueError("timeout_seconds must be >= 0 or -1")
        return timeout

    def _expiry(
        self, now: datetime, timeout: int
    ) -> Tuple[Optional[datetime], Optional[int]]:
        """Logical expiry plus the physical store TTL covering the retention window."""
        if timeout == NEVER_EXPIRE:
            return None, None
        return (
            now + timedelta(seconds=timeout),
            timeout + self.settings.expired_retention_seconds,
        )

    def _session_timeout(self, record: SessionRecord) -> int:
        if record.timeout_seconds is None:
            return self.settings.timeout_seconds
        return record.timeout_seconds

    def _remaining_ttl(self, record: SessionRecord, now: datetime) -> Optional[int]:
        remaining = record.remaining_seconds(now)
        if remaining is None:
            return None
        return remaining + self.settings.expired_retention_seconds

    def _lock_device(self, device: str) -> str:
        return device if self.settings.is_concurrent else _ALL_DEVICES

    def _device(self, device: Optional[str]) -> str:
        if device is None:
            return self.settings.default_device
        device = str(device).strip()
        return device or self.settings.default_device

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    def login(
        self,
        account_id: Any,
        device: Optional[str] = None,
        *,
        meta: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[int] = None,
    ) -> str:
        """Issue a new token for the (account, device) slot.

        A previous occupant of the same slot is moved to REPLACED before the new
        record is stored, all under the slot lock, so the slot never holds two
        active sessions. With ``is_concurrent`` off every other slot of the
        account is replaced as well.
        """
        account_id = normalize_account_id(account_id)
        device = self._device(device)
        timeout = self._timeout(timeout_seconds)
        token = self._generate_token()

        with self.index.slot_lock(account_id, self._lock_device(device)):
            now = self._now()
            if self.settings.is_concurrent:
                displaced = [(device, self.index.lookup_device(account_id, device))]
            else:
                displaced = self.index.lookup(account_id)
            for slot_device, previous in displaced:
                if previous is None:
                    continue
                self._finish(previous, Transition.REPLACE, now)
                if slot_device != device:
                    self.index.unregister(account_id, slot_device, previous)

            expires_at, ttl = self._expiry(now, timeout)
            record = SessionRecord.new(
                token,
                account_id,
                device,
                now=now,
                expires_at=expires_at,
                meta=meta,
                timeout_seconds=timeout,
            )
            self.store.put(token, record, ttl)
            self.index.register(account_id, device, token, ttl)

        self.logger.info(
            "session_login",
            account_id=account_id,
            device=device,
            token=token,
            timeout_seconds=timeout,
        )
        self._enforce_max_login_count(account_id)
        return token

    def _enforce_max_login_count(self, account_id: str) -> None:
        limit = self.settings.max_login_count
        if limit == NEVER_EXPIRE:
            return
        slots = self.index.lookup(account_id)
        overflow = len(slots) - limit
        if overflow <= 0:
            return
        for device, _ in slots[:overflow]:
            self.logger.info(
                "session_login_limit_exceeded",
                account_id=account_id,
                device=device,
                max_login_count=limit,
            )
            self._invalidate_slot(account_id, device, Transition.LOGOUT)

    # ------------------------------------------------------------------
    # invalidation
    # ------------------------------------------------------------------

    def _finish(self, token: str, transition: Transition, now: datetime) -> bool:
        """Apply a terminal transition to one token; missing tokens are a no-op.

        Returns whether this call performed the transition.
        """
        record = self.store.get(token)
        if record is None:
            return False
        if not can_transition(record.status, transition.target):
            self.logger.debug(
                "session_transition_skipped",
                token=token,
                status=record.status.value,
                transition=transition.value,
            )
            return False
        if transition == Transition.LOGOUT:
            self.store.delete(token)
        else:
            try:
                updated = self.store.mark_status(
                    token,
                    transition.target,
                    expect=SessionStatus.ACTIVE,
                    changed_at=now,
                )
            except RecordNotFound:
                return False
            if updated.status != transition.target or updated.status_changed_at != now:
                # another caller invalidated it first
                return False
        self.logger.info(
            _EVENTS[transition],
            account_id=record.account_id,
            device=record.device,
            token=token,
        )
        return True

    def _invalidate_slot(
        self, account_id: str, device: str, transition: Transition
    ) -> bool:
        with self.index.slot_lock(account_id, self._lock_device(device)):
            token = self.index.lookup_device(account_id, device)
            if token is None:
                return False
            changed = self._finish(token, transition, self._now())
            self.index.unregister(account_id, device, token)
            return changed

    def _invalidate(
        self, account_id: Any, device: Optional[str], transition: Transition
    ) -> int:
        account_id = normalize_account_id(account_id)
        if device is not None:
            count = int(self._invalidate_slot(account_id, self._device(device), transition))
        else:
            count = 0
            for slot_device, _ in self.index.lookup(account_id):
                count += int(self._invalidate_slot(account_id, slot_device, transition))
        self._release_account_if_idle(account_id)
        return count

    def _release_account_if_idle(self, account_id: str) -> None:
        """Drop the account session once no device slot remains."""
        if self.index.lookup(account_id):
            return
        if self.index.clear_account_data(account_id):
            self.logger.info("account_session_cleared", account_id=account_id)

    def _invalidate_token(self, token: str, transition: Transition) -> bool:
        if not token:
            return False
        record = self.store.get(token)
        if record is None:
            return False
        changed = self._finish(token, transition, self._now())
        self.index.unregister(record.account_id, record.device, token)
        self._release_account_if_idle(record.account_id)
        return changed

    def logout(self, account_id: Any, device: Optional[str] = None) -> int:
        """Hard-delete every session of the account, or only the given device's."""
        return self._invalidate(account_id, device, Transition.LOGOUT)

    def logout_by_token(self, token: str) -> bool:
        """Hard-delete one token, whatever its current status."""
        if not token:
            return False
        record = self.store.get(token)
        if record is None:
            return False
        self.store.delete(token)
        self.index.unregister(record.account_id, record.device, token)
        self.logger.info(
            "session_logged_out",
            account_id=record.account_id,
            device=record.device,
            token=token,
        )
        self._release_account_if_idle(record.account_id)
        return True

    def kickout(self, account_id: Any, device: Optional[str] = None) -> int:
        return self._invalidate(account_id, device, Transition.KICKOUT)

    def kickout_by_token(self, token: str) -> bool:
        return self._invalidate_token(token, Transition.KICKOUT)

    def replace(self, account_id: Any, device: Optional[str] = None) -> int:
        return self._invalidate(account_id, device, Transition.REPLACE)

    def replace_by_token(self, token: str) -> bool:
        return self._invalidate_token(token, Transition.REPLACE)

    # ------------------------------------------------------------------
    # checks
    # ------------------------------------------------------------------

    def check(self, token: str) -> CheckResult:
        """Validity of a token with the precise reason when it is not valid."""
        now = self._now()
        record = self.store.get(token) if token else None
        result = evaluate(
            record, now, active_timeout_seconds=self.settings.active_timeout_seconds
        )
        if result.valid:
            self._record_activity(record, now)
        return result

    def _record_activity(self, record: SessionRecord, now: datetime) -> None:
        if self.settings.sliding_expiration:
            expires_at, ttl = self._expiry(now, self._session_timeout(record))
        elif self.settings.active_timeout_seconds != NEVER_EXPIRE:
            expires_at, ttl = record.expires_at, self._remaining_ttl(record, now)
        else:
            return
        try:
            self.store.touch(
                record.token, touched_at=now, expires_at=expires_at, ttl_seconds=ttl
            )
        except RecordNotFound:
            # deleted between read and touch; the check result already stands
            self.logger.debug("session_touch_missed", token=record.token)
            return
        if self.settings.sliding_expiration:
            self.index.extend_expiry(record.account_id, ttl)

    def require_valid(self, token: str) -> SessionRecord:
        """Like ``check`` but raises the matching AuthenticationError subclass."""
        result = self.check(token)
        if not result.valid:
            raise result.error()
        record = self.store.get(token)
        if record is None:
            raise CheckResult.invalid(InvalidReason.NOT_FOUND).error()
        return record

    def introspect(self, token: str) -> SessionRecord:
        """Full record snapshot, including kicked and replaced sessions."""
        record = self.store.get(token) if token else None
        if record is None:
            raise CheckResult.invalid(InvalidReason.NOT_FOUND).error()
        return record

    def list_sessions(self, account_id: Any) -> List[SessionRecord]:
        """Registered, unexpired sessions of the account in device order.

        Slots whose record has disappeared are pruned from the index, and the
        account session goes with the last of them.
        """
        account_id = normalize_account_id(account_id)
        now = self._now()
        sessions: List[SessionRecord] = []
        pruned = False
        for device, token in self.index.lookup(account_id):
            record = self.store.get(token)
            if record is None:
                self.index.unregister(account_id, device, token)
                pruned = True
                continue
            if record.status == SessionStatus.LOGGED_OUT or record.is_expired(now):
                continue
            sessions.append(record)
        if pruned and not sessions:
            self._release_account_if_idle(account_id)
        return sessions

    def list_tokens(self, account_id: Any) -> List[str]:
        return [record.token for record in self.list_sessions(account_id)]

    def renew(self, token: str, timeout_seconds: Optional[int] = None) -> SessionRecord:
        """Restart the lifetime of an active session.

        Without ``timeout_seconds`` the session gets its issued lifetime again;
        an explicit value becomes the lifetime for later renewals.
        """
        record = self.require_valid(token)
        if timeout_seconds is None:
            timeout = self._session_timeout(record)
        else:
            timeout = self._timeout(timeout_seconds)
        now = self._now()
        expires_at, ttl = self._expiry(now, timeout)
        try:
            renewed = self.store.touch(
                token,
                touched_at=now,
                expires_at=expires_at,
                ttl_seconds=ttl,
                timeout_seconds=timeout,
            )
        except RecordNotFound:
            raise CheckResult.invalid(InvalidReason.NOT_FOUND).error() from None
        self.index.extend_expiry(renewed.account_id, ttl)
        return renewed

    # ------------------------------------------------------------------
    # account session
    # ------------------------------------------------------------------

    def get_account_session(self, account_id: Any) -> Dict[str, Any]:
        """Data shared by every device of the account."""
        return self.index.get_account_data(normalize_account_id(account_id))

    def get_account_data(self, account_id: Any, key: str, default: Any = None) -> Any:
        return self.get_account_session(account_id).get(key, default)

    def set_account_data(self, account_id: Any, key: str, value: Any) -> None:
        """Store ``key`` for the account; ``None`` removes it."""
        account_id = normalize_account_id(account_id)
        if not key:
            raise ValueError("account data key must not be empty")
        self.index.update_account_data(account_id, {key: value})
        self.logger.debug("account_data_set", account_id=account_id, key=key)

    def delete_account_data(self, account_id: Any, key: str) -> None:
        self.set_account_data(account_id, key, None)

    # ------------------------------------------------------------------
    # per-token data and safe mode
    # ------------------------------------------------------------------

    def set_token_data(self, token: str, key: str, value: Any) -> None:
        self.require_valid(token)
        try:
            self.store.update_meta(token, meta={key: value})
        except RecordNotFound:
            raise CheckResult.invalid(InvalidReason.NOT_FOUND).error() from None

    def get_token_data(self, token: str, key: str, default: Any = None) -> Any:
        return self.introspect(token).meta.get(key, default)

    def open_safe(
        self, token: str, service: str = "important", ttl_seconds: Optional[int] = None
    ) -> None:
        """Open a time-boxed safe-mode window after a second verification step."""
        self.require_valid(token)
        ttl = self.settings.safe_timeout_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        until = self._now().timestamp() + ttl
        try:
            self.store.update_meta(token, safe_until={service: until})
        except RecordNotFound:
            raise CheckResult.invalid(InvalidReason.NOT_FOUND).error() from None
        self.logger.info("safe_mode_opened", token=token, service=service, ttl_seconds=ttl)

    def _safe_services(self, record: SessionRecord, now: datetime) -> frozenset:
        stamp = now.timestamp()
        return frozenset(s for s, until in record.safe_until.items() if until > stamp)

    def is_safe(self, token: str, service: str = "important") -> bool:
        record = self.store.get(token) if token else None
        if record is None or not record.is_active:
            return False
        return service in self._safe_services(record, self._now())

    def close_safe(self, token: str, service: str = "important") -> None:
        try:
            self.store.update_meta(token, safe_until={service: None})
        except RecordNotFound:
            return
        self.logger.info("safe_mode_closed", token=token, service=service)

    # ------------------------------------------------------------------
    # authorization
    # ------------------------------------------------------------------

    def _context(self, record: SessionRecord, now: datetime) -> AuthorizationContext:
        account_id = record.account_id
        if self.permissions is None:
            roles, permissions, disabled = [], [], set()
        else:
            roles = self.permissions.get_roles(account_id)
            permissions = self.permissions.get_permissions(account_id)
            disabled = self.permissions.get_disabled_services(account_id)
        return AuthorizationContext(
            account_id=account_id,
            roles=frozenset(roles),
            permissions=frozenset(permissions),
            disabled_services=frozenset(disabled),
            safe_services=self._safe_services(record, now),
        )

    def authorize(self, token: str, requirement: Requirement) -> Decision:
        """Evaluate a requirement tree against the session behind ``token``."""
        requirement = validate_requirement(requirement)
        if contains_bypass(requirement):
            return Decision.allow()
        result = self.check(token)
        if not result.valid:
            return Decision.deny("login", "login", reason=result.reason)
        record = self.store.get(token)
        if record is None:
            return Decision.deny("login", "login", reason=InvalidReason.NOT_FOUND)
        decision = evaluate_requirement(requirement, self._context(record, self._now()))
        if not decision.allowed:
            self.logger.info(
                "authorization_denied",
                account_id=record.account_id,
                failed_requirement=decision.failed_requirement,
                failed_kind=decision.failed_kind,
            )
        return decision

    def require(self, token: str, requirement: Requirement) -> Optional[SessionRecord]:
        """Raise unless ``authorize`` allows; returns the session record if any."""
        decision = self.authorize(token, requirement)
        if decision.allowed:
            return self.store.get(token) if token else None
        if decision.reason is not None:
            raise CheckResult.invalid(decision.reason).error()
        raise ForbiddenError(
            f"missing {decision.failed_kind}: {decision.failed_requirement}",
            detail={
                "failed_requirement": decision.failed_requirement,
                "failed_kind": decision.failed_kind,
            },
        )


__all__ = ["SessionService"]
