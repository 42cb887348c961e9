from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
import time
from typing import Callable, List, Optional, Protocol
from urllib.parse import quote

from tenantguard.logging import get_logger

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 10


class OtpStrategy(Protocol):
    def generate_secret(self) -> str: ...

    def generate(self, secret: str, timestamp: Optional[float] = None) -> str: ...

    def verify(self, secret: str, code: str, timestamp: Optional[float] = None) -> bool: ...

    def provisioning_uri(self, secret: str, account: str, issuer: str) -> str: ...


class HmacTotpStrategy:
    """RFC 6238 time-based codes: HMAC-SHA1, 30 second step, 6 digits.

    ``window`` is the number of adjacent steps accepted on either side of the
    current one. The default of 0 accepts the current step only.
    """

    def __init__(
        self,
        *,
        interval: int = 30,
        digits: int = 6,
        window: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval < 1:
            raise ValueError("interval must be positive")
        if window < 0:
            raise ValueError("window must be >= 0")
        self.interval = interval
        self.digits = digits
        self.window = window
        self._clock = clock

    def generate_secret(self) -> str:
        return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")

    def generate(self, secret: str, timestamp: Optional[float] = None) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        if timestamp is None:
            timestamp = self._clock()
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify(self, secret: str, code: str, timestamp: Optional[float] = None) -> bool:
        if not code:
            return False
        if timestamp is None:
            timestamp = self._clock()
        candidate = code.strip()
        for offset in range(-self.window, self.window + 1):
            generated = self.generate(secret, timestamp + offset * self.interval)
            if generated and hmac.compare_digest(generated, candidate):
                return True
        return False

    def provisioning_uri(self, secret: str, account: str, issuer: str) -> str:
        label = quote(f"{issuer}:{account}", safe=":@")
        return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer, safe='')}"


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    """Random 8-character hex codes, shown to the user once."""
    return [secrets.token_hex(4) for _ in range(count)]


def hash_backup_code(code: str, pepper: str) -> str:
    # Deterministic so a presented code can be looked up by its digest
    normalized = code.strip().lower()
    return hmac.new(pepper.encode(), normalized.encode(), hashlib.sha256).hexdigest()


__all__ = [
    "BACKUP_CODE_COUNT",
    "HmacTotpStrategy",
    "OtpStrategy",
    "generate_backup_codes",
    "hash_backup_code",
]
