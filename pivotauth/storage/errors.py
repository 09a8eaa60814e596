from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class WriteConflict(Exception):
    """Raised when a compare-and-set update loses against a concurrent writer."""

    def __init__(self, account_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(f"account {account_id} changed concurrently")
        self.account_id = account_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or fails mid-operation."""


__all__ = ["ConstraintViolation", "WriteConflict", "StoreUnavailable"]
