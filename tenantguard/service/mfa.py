from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from tenantguard.logging import get_logger
from tenantguard.service.errors import NotFoundError, ValidationError
from tenantguard.service.otp import (
    HmacTotpStrategy,
    OtpStrategy,
    generate_backup_codes,
    hash_backup_code,
)
from tenantguard.storage.models import MfaAttempt, MfaDevice, MfaDeviceType, new_id

logger = get_logger(__name__)

DEFAULT_ISSUER = "SaaS School Management"
DEVICE_NOT_FOUND = "MFA device not found"
_CODE_BEARING_TYPES = {MfaDeviceType.TOTP.value, MfaDeviceType.BACKUP_CODE.value}


class MfaStore(Protocol):
    def create_mfa_device(self, device: MfaDevice) -> MfaDevice: ...

    def get_mfa_device(self, device_id: str) -> Optional[MfaDevice]: ...

    def list_mfa_devices(self, user_id: str) -> List[MfaDevice]: ...

    def set_mfa_device_enabled(
        self, device_id: str, user_id: str, enabled: bool
    ) -> Optional[MfaDevice]: ...

    def mark_mfa_device_used(self, device_id: str, used_at: datetime) -> None: ...

    def consume_backup_code(self, device_id: str, code_hash: str) -> bool: ...

    def replace_backup_codes(self, device_id: str, code_hashes: List[str]) -> None: ...

    def delete_mfa_device(self, device_id: str, user_id: str) -> bool: ...

    def count_active_mfa_devices(self, user_id: str) -> int: ...

    def record_mfa_attempt(
        self,
        user_id: str,
        device_id: str,
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MfaAttempt: ...


@dataclass
class DeviceEnrollment:
    device: "MfaDeviceSummary"
    # Plaintext codes; only their digests are stored
    backup_codes: List[str] = field(default_factory=list)
    otpauth_uri: Optional[str] = None


@dataclass
class MfaVerification:
    success: bool
    is_backup_code: bool = False


@dataclass
class MfaDeviceSummary:
    id: str
    user_id: str
    type: str
    name: str
    is_enabled: bool
    is_verified: bool
    backup_codes_remaining: int
    last_used_at: Optional[datetime]
    created_at: datetime

    @classmethod
    def from_device(cls, device: MfaDevice) -> "MfaDeviceSummary":
        return cls(
            id=device.id,
            user_id=device.user_id,
            type=device.type,
            name=device.name,
            is_enabled=device.is_enabled,
            is_verified=device.is_verified,
            backup_codes_remaining=len(device.backup_codes),
            last_used_at=device.last_used_at,
            created_at=device.created_at,
        )


class MfaService:
    """Second-factor enrollment and verification.

    SMS and email devices hold an opaque placeholder secret; delivery and
    checking of their codes happen in an external channel, so ``verify_code``
    accepts any code for them and logs the reduced assurance.
    """

    def __init__(
        self,
        store: MfaStore,
        *,
        backup_code_pepper: str,
        issuer: str = DEFAULT_ISSUER,
        otp: Optional[OtpStrategy] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not backup_code_pepper:
            raise RuntimeError("backup_code_pepper is required")
        self.store = store
        self.issuer = issuer
        self.otp: OtpStrategy = otp or HmacTotpStrategy()
        self._pepper = backup_code_pepper
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._now_fn()

    def _hash_codes(self, codes: List[str]) -> List[str]:
        return [hash_backup_code(code, self._pepper) for code in codes]

    def create_device(
        self,
        user_id: str,
        email: str,
        device_type: str,
        name: Optional[str] = None,
    ) -> DeviceEnrollment:
        try:
            kind = MfaDeviceType(device_type)
        except ValueError:
            raise ValidationError(
                "Unsupported MFA device type", detail={"type": device_type}
            )

        codes: List[str] = []
        uri: Optional[str] = None
        if kind is MfaDeviceType.TOTP:
            secret = self.otp.generate_secret()
            uri = self.otp.provisioning_uri(secret, email, self.issuer)
            codes = generate_backup_codes()
        elif kind is MfaDeviceType.BACKUP_CODE:
            secret = secrets.token_hex(32)
            codes = generate_backup_codes()
        else:
            # Placeholder; sms/email codes are checked by the delivery channel
            secret = secrets.token_hex(32)

        device = self.store.create_mfa_device(
            MfaDevice(
                id=new_id(),
                user_id=user_id,
                type=kind.value,
                name=name or kind.value.upper(),
                secret=secret,
                backup_codes=self._hash_codes(codes),
                created_at=self._now(),
            )
        )
        self.logger.info(
            "mfa_device_created",
            user_id=user_id,
            device_id=device.id,
            device_type=kind.value,
            backup_codes_issued=len(codes),
        )
        return DeviceEnrollment(
            device=MfaDeviceSummary.from_device(device), backup_codes=codes, otpauth_uri=uri
        )

    def _eligible_device(self, user_id: str, device_id: str) -> MfaDevice:
        device = self.store.get_mfa_device(device_id)
        # Absent, foreign and disabled devices are indistinguishable to callers
        if not device or device.user_id != user_id or not device.is_enabled:
            raise NotFoundError(DEVICE_NOT_FOUND)
        return device

    def _owned_device(self, user_id: str, device_id: str) -> MfaDevice:
        device = self.store.get_mfa_device(device_id)
        if not device or device.user_id != user_id:
            raise NotFoundError(DEVICE_NOT_FOUND)
        return device

    def verify_code(
        self,
        user_id: str,
        device_id: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MfaVerification:
        try:
            device = self._eligible_device(user_id, device_id)
        except NotFoundError:
            self.logger.warning("mfa_device_rejected", user_id=user_id, device_id=device_id)
            raise

        is_backup = False
        if device.type == MfaDeviceType.TOTP.value:
            success = self.otp.verify(device.secret, code or "")
            if not success and code:
                success = is_backup = self.store.consume_backup_code(
                    device.id, hash_backup_code(code, self._pepper)
                )
        elif device.type == MfaDeviceType.BACKUP_CODE.value:
            success = is_backup = bool(code) and self.store.consume_backup_code(
                device.id, hash_backup_code(code, self._pepper)
            )
        else:
            success = True
            self.logger.warning(
                "mfa_unverified_channel_accepted",
                user_id=user_id,
                device_id=device.id,
                device_type=device.type,
            )

        self.store.record_mfa_attempt(
            user_id, device.id, success, ip_address=ip_address, user_agent=user_agent
        )
        if not success:
            self.logger.info("mfa_verify_failed", user_id=user_id, device_id=device.id)
            return MfaVerification(success=False)

        self.store.mark_mfa_device_used(device.id, self._now())
        if not device.is_verified:
            self.logger.info("mfa_device_activated", user_id=user_id, device_id=device.id)
        if is_backup:
            self.logger.info(
                "mfa_backup_code_used",
                user_id=user_id,
                device_id=device.id,
                remaining=max(0, len(device.backup_codes) - 1),
            )
        return MfaVerification(success=True, is_backup_code=is_backup)

    def list_devices(self, user_id: str) -> List[MfaDeviceSummary]:
        return [MfaDeviceSummary.from_device(d) for d in self.store.list_mfa_devices(user_id)]

    def set_device_enabled(
        self, user_id: str, device_id: str, enabled: bool
    ) -> MfaDeviceSummary:
        device = self.store.set_mfa_device_enabled(device_id, user_id, enabled)
        if not device:
            raise NotFoundError(DEVICE_NOT_FOUND)
        self.logger.info(
            "mfa_device_enabled" if enabled else "mfa_device_disabled",
            user_id=user_id,
            device_id=device_id,
        )
        return MfaDeviceSummary.from_device(device)

    def delete_device(self, user_id: str, device_id: str) -> None:
        if not self.store.delete_mfa_device(device_id, user_id):
            raise NotFoundError(DEVICE_NOT_FOUND)
        self.logger.info("mfa_device_deleted", user_id=user_id, device_id=device_id)

    def regenerate_backup_codes(self, user_id: str, device_id: str) -> List[str]:
        device = self._owned_device(user_id, device_id)
        if device.type not in _CODE_BEARING_TYPES:
            raise ValidationError(
                "Backup codes are only issued for totp and backup_code devices",
                detail={"type": device.type},
            )
        codes = generate_backup_codes()
        self.store.replace_backup_codes(device.id, self._hash_codes(codes))
        self.logger.info("mfa_backup_codes_regenerated", user_id=user_id, device_id=device.id)
        return codes

    def is_mfa_enabled(self, user_id: str) -> bool:
        return self.store.count_active_mfa_devices(user_id) > 0


__all__ = [
    "DEFAULT_ISSUER",
    "DEVICE_NOT_FOUND",
    "DeviceEnrollment",
    "MfaDeviceSummary",
    "MfaService",
    "MfaStore",
    "MfaVerification",
]
