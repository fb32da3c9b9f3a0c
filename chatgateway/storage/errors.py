from __future__ import annotations

from typing import Any, Mapping, Optional


class StorageError(Exception):
    """Base for failures the store layer reports to services."""


class ConstraintViolation(StorageError):
    """A row the operation depends on is missing or a unique key already exists."""

    def __init__(self, message: str, detail: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail) if detail else {}


__all__ = ["StorageError", "ConstraintViolation"]
