from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for session-layer exceptions.

    Each class carries an HTTP ``status_code`` and a stable ``error_code`` so the
    external HTTP layer can map failures without inspecting messages:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - invalid_requirement (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Token missing or no longer valid (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionNotFoundError(AuthenticationError):
    """Token does not exist or was deleted by logout."""
    error_code = "token_not_found"


class SessionExpiredError(AuthenticationError):
    """Token lifetime or idle timeout elapsed."""
    error_code = "token_expired"


class SessionKickedError(AuthenticationError):
    """Session was forcibly kicked offline."""
    error_code = "token_kicked"


class SessionReplacedError(AuthenticationError):
    """Session was displaced by a newer login on the same device."""
    error_code = "token_replaced"


class ForbiddenError(ServiceError):
    """Session is valid but fails an authorization requirement (403)."""
    status_code = 403
    error_code = "forbidden"


class InvalidRequirementError(ServiceError):
    """Malformed authorization requirement; a programming error, not a runtime one."""
    status_code = 500
    error_code = "invalid_requirement"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "SessionNotFoundError",
    "SessionExpiredError",
    "SessionKickedError",
    "SessionReplacedError",
    "ForbiddenError",
    "InvalidRequirementError",
]
