from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class _Unset:
    """Marker for a patch field the caller did not supply."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


class MfaDeviceType(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"
    BACKUP_CODE = "backup_code"


class ResetPeriod(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    NEVER = "never"


class ResourceType(str, Enum):
    """Well-known metered resources; other names are accepted as plain strings."""

    API_CALLS = "api_calls"
    STORAGE_GB = "storage_gb"
    USERS = "users"
    STUDENTS = "students"
    API_REQUESTS_PER_MINUTE = "api_requests_per_minute"


@dataclass
class PasswordPolicy:
    tenant_id: Optional[str] = None
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = False
    max_age_days: Optional[int] = 90
    prevent_reuse_count: int = 5
    lockout_attempts: int = 5
    lockout_duration_minutes: int = 30
    updated_at: Optional[datetime] = None

    @classmethod
    def default(cls, tenant_id: Optional[str] = None) -> "PasswordPolicy":
        return cls(tenant_id=tenant_id)


@dataclass
class PasswordHistoryEntry:
    id: str
    user_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class FailedLoginAttempt:
    id: str
    email: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccountLockout:
    user_id: str
    locked_until: datetime
    reason: str
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.locked_until > (now or utcnow())


@dataclass
class MfaDevice:
    id: str
    user_id: str
    type: str
    name: str
    secret: str
    backup_codes: List[str] = field(default_factory=list)
    is_enabled: bool = True
    is_verified: bool = False
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class MfaAttempt:
    id: str
    user_id: str
    device_id: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class IpWhitelistEntry:
    id: str
    tenant_id: str
    ip_address: str
    description: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class QuotaLimit:
    tenant_id: str
    resource_type: str
    limit_value: int = 0
    current_usage: int = 0
    reset_period: str = ResetPeriod.NEVER.value
    warning_threshold: Optional[float] = None
    is_enforced: bool = True
    last_reset_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class QuotaUsageLog:
    id: str
    tenant_id: str
    resource_type: str
    amount: int
    period_start: datetime
    period_end: datetime
    created_at: datetime = field(default_factory=utcnow)


class _Patch:
    """Partial update where UNSET leaves a column untouched and None clears it."""

    def changes(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)  # type: ignore[arg-type]
            if getattr(self, f.name) is not UNSET
        }

    def is_empty(self) -> bool:
        return not self.changes()


@dataclass
class PasswordPolicyPatch(_Patch):
    min_length: Union[int, Any] = UNSET
    require_uppercase: Union[bool, Any] = UNSET
    require_lowercase: Union[bool, Any] = UNSET
    require_numbers: Union[bool, Any] = UNSET
    require_special_chars: Union[bool, Any] = UNSET
    max_age_days: Union[Optional[int], Any] = UNSET
    prevent_reuse_count: Union[int, Any] = UNSET
    lockout_attempts: Union[int, Any] = UNSET
    lockout_duration_minutes: Union[int, Any] = UNSET


@dataclass
class WhitelistEntryPatch(_Patch):
    ip_address: Union[str, Any] = UNSET
    description: Union[Optional[str], Any] = UNSET
    is_active: Union[bool, Any] = UNSET
