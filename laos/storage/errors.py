from __future__ import annotations

from typing import Any, Dict


class ConstraintViolation(Exception):
    """A write would break one of the account uniqueness rules.

    ``field`` names the colliding column (``local_id``, ``email_provider``...)
    so callers can report which value is taken without parsing the message.
    """

    def __init__(self, field: str, message: str | None = None) -> None:
        message = message or f"{field.replace('_', ' ')} already exists"
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail: Dict[str, Any] = {"field": field}


__all__ = ["ConstraintViolation"]
