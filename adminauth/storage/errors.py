from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a unique email/username/role/permission name is taken."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ReferenceViolation(ConstraintViolation):
    """Raised when deleting a record that other records still point at."""


__all__ = ["ConstraintViolation", "ReferenceViolation"]
