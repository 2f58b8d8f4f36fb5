from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for errors raised by cache and durable store adapters."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key constraint was violated."""


class StoreUnavailable(StorageError):
    """The durable store could not be reached or a statement failed."""


class CacheUnavailable(StorageError):
    """The shared cache could not be reached or timed out."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable", "CacheUnavailable"]
