from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule rejected a write.

    ``constraint`` names the violated rule (``user_email_unique``,
    ``refresh_token_hash_unique``, ``refresh_token_owner_fk``) so callers can
    translate it without parsing driver messages.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.constraint = constraint
        self.detail = detail or {}
        if constraint and "constraint" not in self.detail:
            self.detail["constraint"] = constraint


USER_EMAIL_UNIQUE = "user_email_unique"
REFRESH_TOKEN_HASH_UNIQUE = "refresh_token_hash_unique"
REFRESH_TOKEN_OWNER_FK = "refresh_token_owner_fk"


__all__ = [
    "ConstraintViolation",
    "USER_EMAIL_UNIQUE",
    "REFRESH_TOKEN_HASH_UNIQUE",
    "REFRESH_TOKEN_OWNER_FK",
]
