from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for persistence failures surfaced by a store."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule was violated (duplicate email, unknown user)."""

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class StoreUnavailable(StorageError):
    """The backing database could not be reached."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
