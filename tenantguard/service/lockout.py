from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, List, Optional, Protocol

from tenantguard.logging import get_logger
from tenantguard.service.errors import LockedOutError, ValidationError
from tenantguard.service.password_policy import PasswordPolicyService
from tenantguard.storage.models import AccountLockout, FailedLoginAttempt

logger = get_logger(__name__)

# Fixed counting window; the policy only controls the threshold and duration
FAILED_ATTEMPT_WINDOW = timedelta(minutes=15)
LOCKOUT_REASON = "Too many failed login attempts"


class LockoutStore(Protocol):
    def transaction(self) -> ContextManager[object]: ...

    def acquire_user_guard(self, user_id: str) -> None: ...

    def add_failed_attempt(
        self,
        email: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> FailedLoginAttempt: ...

    def count_failed_attempts(self, user_id: str, since: datetime) -> int: ...

    def list_failed_attempts(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        limit: int = 50,
    ) -> List[FailedLoginAttempt]: ...

    def delete_failed_attempts(self, user_id: str) -> int: ...

    def get_lockout(
        self, user_id: str, active_at: Optional[datetime] = None
    ) -> Optional[AccountLockout]: ...

    def upsert_lockout(
        self, user_id: str, locked_until: datetime, reason: str
    ) -> AccountLockout: ...

    def delete_lockout(self, user_id: str) -> bool: ...


@dataclass
class LockoutStatus:
    locked: bool
    locked_until: Optional[datetime] = None


@dataclass
class FailedAttemptResult:
    locked: bool
    remaining_attempts: int


class LockoutService:
    """Rolling-window failed login tracking.

    A user is LOCKED while an ``account_lockouts`` row has ``locked_until`` in
    the future and OPEN otherwise. Callers check ``is_locked`` before verifying
    credentials, call ``record_failed_attempt`` only after verification fails,
    and call ``clear_failed_attempts`` after a successful login.
    """

    def __init__(
        self,
        store: LockoutStore,
        policies: PasswordPolicyService,
        *,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policies = policies
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._now_fn()

    def is_locked(self, user_id: str) -> LockoutStatus:
        lockout = self.store.get_lockout(user_id, active_at=self._now())
        if not lockout:
            return LockoutStatus(locked=False)
        return LockoutStatus(locked=True, locked_until=lockout.locked_until)

    def assert_not_locked(self, user_id: str) -> None:
        status = self.is_locked(user_id)
        if status.locked:
            raise LockedOutError(status.locked_until)

    def record_failed_attempt(
        self,
        email: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> FailedAttemptResult:
        now = self._now()
        if user_id is None:
            # Unknown accounts are still audited by email
            self.store.add_failed_attempt(
                email, None, ip_address=ip_address, user_agent=user_agent, created_at=now
            )
            self.logger.info("login_failed_unknown_user", ip_address=ip_address)
            return FailedAttemptResult(locked=False, remaining_attempts=0)

        policy = self.policies.get_policy(tenant_id)
        with self.store.transaction():
            self.store.acquire_user_guard(user_id)
            self.store.add_failed_attempt(
                email, user_id, ip_address=ip_address, user_agent=user_agent, created_at=now
            )
            count = self.store.count_failed_attempts(user_id, now - FAILED_ATTEMPT_WINDOW)
            threshold = policy.lockout_attempts
            remaining = max(0, threshold - count)
            if threshold <= 0 or count < threshold:
                self.logger.info(
                    "login_failed",
                    user_id=user_id,
                    window_count=count,
                    remaining_attempts=remaining,
                )
                return FailedAttemptResult(locked=False, remaining_attempts=remaining)

            locked_until = now + timedelta(minutes=policy.lockout_duration_minutes)
            self.store.upsert_lockout(user_id, locked_until, LOCKOUT_REASON)

        self.logger.warning(
            "account_locked",
            user_id=user_id,
            tenant_id=tenant_id,
            window_count=count,
            locked_until=locked_until.isoformat(),
            ip_address=ip_address,
        )
        return FailedAttemptResult(locked=True, remaining_attempts=0)

    def clear_failed_attempts(self, user_id: str) -> None:
        """Full reset after a successful login: lockout row and every attempt."""
        with self.store.transaction():
            self.store.delete_lockout(user_id)
            removed = self.store.delete_failed_attempts(user_id)
        self.logger.debug("failed_attempts_cleared", user_id=user_id, removed=removed)

    def unlock(self, user_id: str) -> bool:
        """Administrative unlock; the attempt history is kept for auditing."""
        removed = self.store.delete_lockout(user_id)
        if removed:
            self.logger.info("account_unlocked", user_id=user_id)
        return removed

    def list_recent_attempts(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        limit: int = 50,
    ) -> List[FailedLoginAttempt]:
        if user_id is None and email is None:
            raise ValidationError("user_id or email is required")
        return self.store.list_failed_attempts(user_id=user_id, email=email, limit=limit)


__all__ = [
    "FAILED_ATTEMPT_WINDOW",
    "FailedAttemptResult",
    "LOCKOUT_REASON",
    "LockoutService",
    "LockoutStatus",
    "LockoutStore",
]
