from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign key constraint is violated.

    ``detail["field"]`` names the offending column when the store knows it.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class StoreUnavailable(Exception):
    """Raised when the backing database cannot be reached or is misconfigured."""


__all__ = ["ConstraintViolation", "StoreUnavailable"]
