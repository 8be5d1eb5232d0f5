from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for record-backend failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness constraint (e.g. principal email) was violated."""

    def __init__(self, message: str, *, constraint: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, {**(detail or {}), "constraint": constraint})
        self.constraint = constraint


class BackendUnavailable(StorageError):
    """The record backend could not be reached."""


__all__ = ["StorageError", "ConstraintViolation", "BackendUnavailable"]
