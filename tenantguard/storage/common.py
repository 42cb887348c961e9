"""Storage helpers shared by the memory and Postgres backends.

Both stores encrypt MFA device secrets at rest and convert between dataclass
records and plain rows the same way; keeping that logic here guarantees the
two backends agree on formats.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import asdict, fields
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from cryptography.fernet import Fernet, InvalidToken

from tenantguard.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DATETIME_FIELDS = frozenset(
    {
        "created_at",
        "updated_at",
        "locked_until",
        "last_used_at",
        "last_reset_at",
        "period_start",
        "period_end",
    }
)


class SecretCipher:
    """Fernet wrapper used to keep MFA secrets encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        try:
            self._fernet = Fernet(self.derive_key(key_material))
        except ValueError as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled hold plaintext
            logger.warning("mfa_secret_decrypt_failed")
            return token


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def record_to_dict(record: Any) -> Dict[str, Any]:
    """Serialize a dataclass record into JSON-friendly primitives."""

    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def record_from_row(cls: Type[T], row: Mapping[str, Any]) -> T:
    """Build a dataclass from a DB row or decoded JSON, ignoring extra columns."""

    kwargs: Dict[str, Any] = {}
    for f in fields(cls):  # type: ignore[arg-type]
        if f.name not in row:
            continue
        value = row[f.name]
        if f.name in DATETIME_FIELDS and value is not None:
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            value = ensure_utc(value)
        elif f.name in {"id", "user_id", "device_id"} and value is not None:
            value = str(value)
        kwargs[f.name] = value
    return cls(**kwargs)


__all__ = [
    "DATETIME_FIELDS",
    "SecretCipher",
    "ensure_utc",
    "record_from_row",
    "record_to_dict",
]
