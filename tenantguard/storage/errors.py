from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write conflicted with a uniqueness or CHECK rule of a security table.

    Both stores raise it, so services never see driver-specific exceptions.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        table: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.table = table
        self.detail = dict(detail or {})
        if table:
            self.detail.setdefault("table", table)


__all__ = ["ConstraintViolation"]
