from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """An identity-store write broke a uniqueness rule or an MFA state transition."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
