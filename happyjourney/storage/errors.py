from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for record store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """A unique key (user email, session id, vote triple) is already taken."""


class StoreUnavailable(StoreError):
    """The backing database could not be reached."""


__all__ = ["StoreError", "ConstraintViolation", "StoreUnavailable"]
