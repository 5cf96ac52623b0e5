from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleRecord(Exception):
    """Raised when a conditional update finds a different version than expected."""

    def __init__(self, account_id: str, expected_version: int):
        super().__init__(
            f"account {account_id} changed since version {expected_version}"
        )
        self.account_id = account_id
        self.expected_version = expected_version


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or fails internally."""


__all__ = ["ConstraintViolation", "StaleRecord", "StoreUnavailable"]
