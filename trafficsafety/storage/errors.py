from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule of the user/token tables was violated.

    ``detail`` names the offending field (``{"field": "email"}``) and, for
    Postgres, the constraint reported by the server.
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
        self.detail = dict(detail or {})
        if constraint:
            self.detail.setdefault("constraint", constraint)


__all__ = ["ConstraintViolation"]
