from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for errors raised by a store implementation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or reference constraint was violated."""


class RecordNotFound(StorageError):
    """An update or delete targeted a record that does not exist."""


__all__ = ["StorageError", "ConstraintViolation", "RecordNotFound"]
