"""Session state machine.

A session starts ACTIVE and leaves it exactly once, for LOGGED_OUT (hard
delete), KICKED or REPLACED (soft, the record is retained). Terminal states are
absorbing: nothing returns to ACTIVE and the first invalidation cause is kept.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Type

from sessionward.config import NEVER_EXPIRE
from sessionward.service.errors import (
    AuthenticationError,
    SessionExpiredError,
    SessionKickedError,
    SessionNotFoundError,
    SessionReplacedError,
)
from sessionward.storage.models import SessionRecord, SessionStatus


class Transition(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    KICKOUT = "kickout"
    REPLACE = "replace"

    @property
    def target(self) -> SessionStatus:
        return _TARGETS[self]


_TARGETS = {
    Transition.LOGIN: SessionStatus.ACTIVE,
    Transition.LOGOUT: SessionStatus.LOGGED_OUT,
    Transition.KICKOUT: SessionStatus.KICKED,
    Transition.REPLACE: SessionStatus.REPLACED,
}

TERMINAL_STATUSES = frozenset(
    {SessionStatus.LOGGED_OUT, SessionStatus.KICKED, SessionStatus.REPLACED}
)


def can_transition(current: Optional[SessionStatus], target: SessionStatus) -> bool:
    """Whether a record in ``current`` may move to ``target``.

    ``current`` is None for a token that does not exist yet; only a login may
    create one.
    """
    if current is None:
        return target == SessionStatus.ACTIVE
    if current in TERMINAL_STATUSES:
        return False
    return target in TERMINAL_STATUSES


class InvalidReason(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    KICKED = "kicked"
    REPLACED = "replaced"

    @property
    def message(self) -> str:
        return _MESSAGES[self]

    @property
    def error_class(self) -> Type[AuthenticationError]:
        return _ERRORS[self]


_MESSAGES = {
    InvalidReason.NOT_FOUND: "token does not exist or was deleted",
    InvalidReason.EXPIRED: "session expired",
    InvalidReason.KICKED: "session was forcibly kicked offline",
    InvalidReason.REPLACED: "session was displaced by a newer login",
}

_ERRORS = {
    InvalidReason.NOT_FOUND: SessionNotFoundError,
    InvalidReason.EXPIRED: SessionExpiredError,
    InvalidReason.KICKED: SessionKickedError,
    InvalidReason.REPLACED: SessionReplacedError,
}

_STATUS_REASONS = {
    SessionStatus.LOGGED_OUT: InvalidReason.NOT_FOUND,
    SessionStatus.KICKED: InvalidReason.KICKED,
    SessionStatus.REPLACED: InvalidReason.REPLACED,
}


@dataclass(frozen=True)
class CheckResult:
    valid: bool
    account_id: Optional[str] = None
    device: Optional[str] = None
    status: Optional[SessionStatus] = None
    reason: Optional[InvalidReason] = None

    @property
    def message(self) -> Optional[str]:
        return self.reason.message if self.reason else None

    def error(self) -> AuthenticationError:
        """Exception matching this result; only meaningful when not valid."""
        reason = self.reason or InvalidReason.NOT_FOUND
        detail = {"reason": reason.value}
        if self.account_id is not None:
            detail["account_id"] = self.account_id
        return reason.error_class(reason.message, detail=detail)

    @classmethod
    def ok(cls, record: SessionRecord) -> "CheckResult":
        return cls(
            valid=True,
            account_id=record.account_id,
            device=record.device,
            status=record.status,
        )

    @classmethod
    def invalid(
        cls, reason: InvalidReason, record: Optional[SessionRecord] = None
    ) -> "CheckResult":
        if record is None:
            return cls(valid=False, reason=reason)
        return cls(
            valid=False,
            account_id=record.account_id,
            device=record.device,
            status=record.status,
            reason=reason,
        )


def is_idle(
    record: SessionRecord, now: datetime, active_timeout_seconds: int
) -> bool:
    if active_timeout_seconds == NEVER_EXPIRE:
        return False
    idle = (now - record.last_touched_at).total_seconds()
    return idle >= active_timeout_seconds


def evaluate(
    record: Optional[SessionRecord],
    now: datetime,
    *,
    active_timeout_seconds: int = NEVER_EXPIRE,
) -> CheckResult:
    """Validity of a stored record at ``now``.

    Administrative invalidation wins over expiry so a kicked session that has
    since elapsed still reports KICKED.
    """
    if record is None:
        return CheckResult.invalid(InvalidReason.NOT_FOUND)
    if record.status in _STATUS_REASONS:
        return CheckResult.invalid(_STATUS_REASONS[record.status], record)
    if record.is_expired(now) or is_idle(record, now, active_timeout_seconds):
        return CheckResult.invalid(InvalidReason.EXPIRED, record)
    return CheckResult.ok(record)


__all__ = [
    "Transition",
    "TERMINAL_STATUSES",
    "can_transition",
    "InvalidReason",
    "CheckResult",
    "is_idle",
    "evaluate",
]
