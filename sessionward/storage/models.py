from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class SessionStatus(str, Enum):
    ACTIVE = "active"
    LOGGED_OUT = "logged_out"
    KICKED = "kicked"
    REPLACED = "replaced"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class SessionRecord:
    """One authenticated presence of an account on one device."""

    token: str
    account_id: str
    device: str
    created_at: datetime
    last_touched_at: datetime
    expires_at: Optional[datetime]
    status: SessionStatus = SessionStatus.ACTIVE
    status_changed_at: Optional[datetime] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    # service name -> epoch seconds when the safe-mode window closes
    safe_until: Dict[str, float] = field(default_factory=dict)
    # lifetime the session was issued with; None falls back to the configured timeout
    timeout_seconds: Optional[int] = None

    @classmethod
    def new(
        cls,
        token: str,
        account_id: str,
        device: str,
        *,
        now: datetime,
        expires_at: Optional[datetime],
        meta: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[int] = None,
    ) -> "SessionRecord":
        return cls(
            token=token,
            account_id=account_id,
            device=device,
            created_at=now,
            last_touched_at=now,
            expires_at=expires_at,
            meta=dict(meta or {}),
            timeout_seconds=timeout_seconds,
        )

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return _as_utc(now) >= _as_utc(self.expires_at)

    def remaining_seconds(self, now: datetime) -> Optional[int]:
        """Seconds until logical expiry, ``None`` for never-expiring tokens."""
        if self.expires_at is None:
            return None
        return max(0, int((_as_utc(self.expires_at) - _as_utc(now)).total_seconds()))

    def copy(self) -> "SessionRecord":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "account_id": self.account_id,
            "device": self.device,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "last_touched_at": self.last_touched_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "status_changed_at": (
                self.status_changed_at.isoformat() if self.status_changed_at else None
            ),
            "meta": self.meta,
            "safe_until": self.safe_until,
            "timeout_seconds": self.timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        def _dt(raw: Optional[str]) -> Optional[datetime]:
            return _as_utc(datetime.fromisoformat(raw)) if raw else None

        return cls(
            token=data["token"],
            account_id=str(data["account_id"]),
            device=data["device"],
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
            created_at=_dt(data["created_at"]),
            last_touched_at=_dt(data.get("last_touched_at") or data["created_at"]),
            expires_at=_dt(data.get("expires_at")),
            status_changed_at=_dt(data.get("status_changed_at")),
            meta=dict(data.get("meta") or {}),
            safe_until={k: float(v) for k, v in (data.get("safe_until") or {}).items()},
            timeout_seconds=data.get("timeout_seconds"),
        )
