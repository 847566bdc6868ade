from __future__ import annotations

from typing import Any, Dict, List, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated.

    ``errors`` carries structured ``{"code", "description"}`` entries so that
    callers can relay them without parsing the message.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        errors: Optional[List[Dict[str, str]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.errors = errors or [{"code": "ConstraintViolation", "description": message}]


__all__ = ["ConstraintViolation"]
