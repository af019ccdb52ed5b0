from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for credential store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or reference constraint would be broken by the write."""

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class UnknownRecord(StorageError):
    """The record addressed by a mutation does not exist."""


__all__ = ["StorageError", "ConstraintViolation", "UnknownRecord"]
