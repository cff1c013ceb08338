from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for token store and account index failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(StorageError):
    """Raised when a mutation targets a token that is not stored."""


class StoreUnavailable(StorageError):
    """Raised when the backing key-value store cannot serve a request.

    Never retried by the session layer; retry policy belongs to the caller.
    """


__all__ = ["StorageError", "RecordNotFound", "StoreUnavailable"]
