from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated.

    ``detail["field"]`` names the offending column (``email``, ``login_id``) so the
    session service can translate the race-lost insert into the matching typed error.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        value = self.detail.get("field")
        return str(value) if value is not None else None


__all__ = ["ConstraintViolation"]
