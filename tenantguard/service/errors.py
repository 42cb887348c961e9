from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base class for gate-level exceptions.

    Each class carries an HTTP-style ``status_code`` and a stable
    ``error_code``; ``to_envelope()`` renders the ``{"status": "error", ...}``
    body without the caller inspecting the message. Codes in use:
    - validation_error (400)
    - not_found (404)
    - policy_violation (422)
    - locked_out (423)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_envelope(self) -> Dict[str, Any]:
        """Render as the error envelope used by the request-handling layer."""
        return {
            "status": "error",
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.detail or None,
            },
        }


class ValidationError(ServiceError):
    """Malformed input, e.g. bad CIDR syntax or an empty patch (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Referenced device/entry/user absent or owned by someone else (404)."""
    status_code = 404
    error_code = "not_found"


class PolicyViolation(ValidationError):
    """Password rejected by the tenant policy; lists every failed rule (422)."""
    status_code = 422
    error_code = "policy_violation"

    def __init__(self, violations: List[str], message: str = "Password does not meet policy") -> None:
        super().__init__(message, detail={"violations": list(violations)})
        self.violations = list(violations)


class LockedOutError(ServiceError):
    """Account is temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "locked_out"

    def __init__(self, locked_until: Optional[datetime], message: str = "Account is locked") -> None:
        detail = {"locked_until": locked_until.isoformat()} if locked_until else {}
        super().__init__(message, detail=detail)
        self.locked_until = locked_until


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "PolicyViolation",
    "LockedOutError",
]
