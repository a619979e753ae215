from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a store write would break a uniqueness or lifecycle rule.

    Covers duplicate user e-mails, duplicate refresh token ids and attempts to
    clear the ``revoked`` flag of a refresh token record.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]
