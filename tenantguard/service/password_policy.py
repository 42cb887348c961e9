from __future__ import annotations

import string
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantguard.logging import get_logger
from tenantguard.service.errors import PolicyViolation, ValidationError
from tenantguard.storage.models import PasswordHistoryEntry, PasswordPolicy, PasswordPolicyPatch

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
REUSE_MESSAGE = "Password has been used recently and cannot be reused"


class PolicyStore(Protocol):
    def transaction(self) -> ContextManager[object]: ...

    def get_password_policy(self, tenant_id: Optional[str]) -> Optional[PasswordPolicy]: ...

    def upsert_password_policy(self, policy: PasswordPolicy) -> PasswordPolicy: ...

    def add_password_history(
        self, user_id: str, password_hash: str, created_at: Optional[datetime] = None
    ) -> PasswordHistoryEntry: ...

    def list_password_history(self, user_id: str, limit: int) -> List[PasswordHistoryEntry]: ...

    def prune_password_history(self, user_id: str, keep: int) -> int: ...


@dataclass
class PasswordEvaluation:
    valid: bool
    violations: List[str] = field(default_factory=list)


def evaluate_password(password: str, policy: PasswordPolicy) -> PasswordEvaluation:
    """Check a candidate password against every rule and report all failures.

    Rules run in a fixed order (length, uppercase, lowercase, digit, special)
    so messages come back in a stable order.
    """

    violations: List[str] = []
    if len(password) < policy.min_length:
        violations.append(f"Password must be at least {policy.min_length} characters long")
    if policy.require_uppercase and not any(c in string.ascii_uppercase for c in password):
        violations.append("Password must contain at least one uppercase letter")
    if policy.require_lowercase and not any(c in string.ascii_lowercase for c in password):
        violations.append("Password must contain at least one lowercase letter")
    if policy.require_numbers and not any(c in string.digits for c in password):
        violations.append("Password must contain at least one number")
    if policy.require_special_chars and not any(c in SPECIAL_CHARACTERS for c in password):
        violations.append("Password must contain at least one special character")
    return PasswordEvaluation(valid=not violations, violations=violations)


def is_password_expired(
    changed_at: Optional[datetime],
    policy: PasswordPolicy,
    now: Optional[datetime] = None,
) -> bool:
    if policy.max_age_days is None or changed_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - changed_at >= timedelta(days=policy.max_age_days)


class PasswordPolicyService:
    """Tenant password rules, history-based reuse checks and the change flow."""

    def __init__(
        self,
        store: PolicyStore,
        *,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._now_fn()

    # policy
    def get_policy(self, tenant_id: Optional[str]) -> PasswordPolicy:
        if tenant_id is not None:
            policy = self.store.get_password_policy(tenant_id)
            if policy:
                return policy
        policy = self.store.get_password_policy(None)
        if policy:
            return replace(policy, tenant_id=tenant_id)
        return PasswordPolicy.default(tenant_id)

    def update_policy(
        self, tenant_id: Optional[str], patch: PasswordPolicyPatch
    ) -> PasswordPolicy:
        if patch.is_empty():
            raise ValidationError("No updates provided")
        changes = patch.changes()
        self._validate_policy_changes(changes)
        with self.store.transaction():
            existing = self.store.get_password_policy(tenant_id)
            base = existing or PasswordPolicy.default(tenant_id)
            policy = self.store.upsert_password_policy(replace(base, **changes))
        self.logger.info(
            "password_policy_updated",
            tenant_id=tenant_id,
            fields=sorted(changes),
            created=existing is None,
        )
        return policy

    @staticmethod
    def _validate_policy_changes(changes: dict) -> None:
        minimums = {
            "min_length": 1,
            "prevent_reuse_count": 0,
            "lockout_attempts": 0,
            "lockout_duration_minutes": 1,
            "max_age_days": 1,
        }
        for name, minimum in minimums.items():
            if name not in changes:
                continue
            value = changes[name]
            if value is None and name == "max_age_days":
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer", detail={"field": name})
            if value < minimum:
                raise ValidationError(
                    f"{name} must be >= {minimum}", detail={"field": name, "value": value}
                )
        for name in (
            "require_uppercase",
            "require_lowercase",
            "require_numbers",
            "require_special_chars",
        ):
            if name in changes and not isinstance(changes[name], bool):
                raise ValidationError(f"{name} must be a boolean", detail={"field": name})

    # hashing
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # history
    def is_password_reused(self, user_id: str, candidate_hash: str, n: int) -> bool:
        """Exact hash comparison against the newest ``n`` history rows.

        Only meaningful for deterministic hashes; salted argon2 hashes never
        compare equal, use ``matches_recent_password`` for those.
        """
        if n <= 0:
            return False
        history = self.store.list_password_history(user_id, n)
        return any(entry.password_hash == candidate_hash for entry in history)

    def matches_recent_password(self, user_id: str, password: str, n: int) -> bool:
        if n <= 0:
            return False
        history = self.store.list_password_history(user_id, n)
        return any(self.verify_password(entry.password_hash, password) for entry in history)

    def record_password(
        self, user_id: str, password_hash: str, tenant_id: Optional[str] = None
    ) -> PasswordHistoryEntry:
        keep = self.get_policy(tenant_id).prevent_reuse_count
        with self.store.transaction():
            entry = self.store.add_password_history(user_id, password_hash, self._now())
            pruned = self.store.prune_password_history(user_id, keep)
        if pruned:
            self.logger.debug("password_history_pruned", user_id=user_id, removed=pruned)
        return entry

    def change_password(
        self, user_id: str, tenant_id: Optional[str], new_password: str
    ) -> str:
        """Validate and record a new password, returning its argon2id hash.

        Persisting the hash on the user record is left to the caller.
        """
        policy = self.get_policy(tenant_id)
        evaluation = evaluate_password(new_password, policy)
        if not evaluation.valid:
            self.logger.info(
                "password_change_rejected",
                user_id=user_id,
                tenant_id=tenant_id,
                violations=len(evaluation.violations),
            )
            raise PolicyViolation(evaluation.violations)
        if self.matches_recent_password(user_id, new_password, policy.prevent_reuse_count):
            self.logger.info("password_change_reused", user_id=user_id, tenant_id=tenant_id)
            raise PolicyViolation([REUSE_MESSAGE], message=REUSE_MESSAGE)
        password_hash = self.hash_password(new_password)
        self.record_password(user_id, password_hash, tenant_id)
        self.logger.info("password_changed", user_id=user_id, tenant_id=tenant_id)
        return password_hash

    def is_password_expired(
        self, changed_at: Optional[datetime], tenant_id: Optional[str]
    ) -> bool:
        return is_password_expired(changed_at, self.get_policy(tenant_id), self._now())


__all__ = [
    "PasswordEvaluation",
    "PasswordPolicyService",
    "PolicyStore",
    "REUSE_MESSAGE",
    "SPECIAL_CHARACTERS",
    "evaluate_password",
    "is_password_expired",
]
