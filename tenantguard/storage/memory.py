from __future__ import annotations

import contextlib
import copy
import json
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from tenantguard.logging import get_logger
from tenantguard.storage.common import SecretCipher, record_from_row, record_to_dict
from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.models import (
    AccountLockout,
    FailedLoginAttempt,
    IpWhitelistEntry,
    MfaAttempt,
    MfaDevice,
    PasswordHistoryEntry,
    PasswordPolicy,
    QuotaLimit,
    QuotaUsageLog,
    ResetPeriod,
    new_id,
    utcnow,
)

_TABLES = (
    "password_policies",
    "password_history",
    "failed_attempts",
    "lockouts",
    "mfa_devices",
    "mfa_attempts",
    "whitelist",
    "quota_limits",
    "quota_usage_logs",
)


class MemoryStore:
    """In-process security store for tests and single-node deployments.

    Every method takes the same re-entrant lock, and ``transaction()`` holds it
    for the whole block, so a check-then-mutate sequence inside a transaction
    cannot interleave with another caller. A failed transaction restores the
    snapshot taken on entry.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/tenantguard",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.password_policies: Dict[Optional[str], PasswordPolicy] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.failed_attempts: List[FailedLoginAttempt] = []
        self.lockouts: Dict[str, AccountLockout] = {}
        self.mfa_devices: Dict[str, MfaDevice] = {}
        self.mfa_attempts: List[MfaAttempt] = []
        self.whitelist: Dict[str, IpWhitelistEntry] = {}
        self.quota_limits: Dict[Tuple[str, str], QuotaLimit] = {}
        self.quota_usage_logs: List[QuotaUsageLog] = []
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(
            mfa_encryption_key or os.getenv("MFA_ENCRYPTION_KEY") or "tenantguard-memory-store"
        )
        if self.persist:
            self._load_state()

    # transactions
    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot() if self._tx_depth == 0 else None
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if snapshot is not None:
                    self._restore(snapshot)
                raise
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._persist_state()

    def acquire_user_guard(self, user_id: str) -> None:
        """Serialize per-user counting; the transaction lock already does this here."""
        if self._tx_depth == 0:
            raise RuntimeError("acquire_user_guard must be called inside transaction()")

    def _snapshot(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    def _changed(self) -> None:
        if self._tx_depth == 0:
            self._persist_state()

    # password policy
    def get_password_policy(self, tenant_id: Optional[str]) -> Optional[PasswordPolicy]:
        with self._data_lock:
            policy = self.password_policies.get(tenant_id)
            return replace(policy) if policy else None

    def upsert_password_policy(self, policy: PasswordPolicy) -> PasswordPolicy:
        with self._data_lock:
            stored = replace(policy, updated_at=utcnow())
            self.password_policies[policy.tenant_id] = stored
            self._changed()
            return replace(stored)

    def add_password_history(
        self, user_id: str, password_hash: str, created_at: Optional[datetime] = None
    ) -> PasswordHistoryEntry:
        with self._data_lock:
            entry = PasswordHistoryEntry(
                id=new_id(),
                user_id=user_id,
                password_hash=password_hash,
                created_at=created_at or utcnow(),
            )
            self.password_history.setdefault(user_id, []).append(entry)
            self._changed()
            return replace(entry)

    def list_password_history(self, user_id: str, limit: int) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            if limit <= 0:
                return []
            entries = self._history_newest_first(user_id)
            return [replace(e) for e in entries[:limit]]

    def prune_password_history(self, user_id: str, keep: int) -> int:
        with self._data_lock:
            entries = self._history_newest_first(user_id)
            retained = entries[: max(keep, 0)]
            removed = len(entries) - len(retained)
            if removed:
                self.password_history[user_id] = list(reversed(retained))
                self._changed()
            return removed

    def _history_newest_first(self, user_id: str) -> List[PasswordHistoryEntry]:
        # Insertion order breaks ties between identical timestamps
        indexed = list(enumerate(self.password_history.get(user_id, [])))
        indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [entry for _, entry in indexed]

    # failed logins / lockouts
    def add_failed_attempt(
        self,
        email: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> FailedLoginAttempt:
        with self._data_lock:
            attempt = FailedLoginAttempt(
                id=new_id(),
                email=email,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=created_at or utcnow(),
            )
            self.failed_attempts.append(attempt)
            self._changed()
            return replace(attempt)

    def count_failed_attempts(self, user_id: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for attempt in self.failed_attempts
                if attempt.user_id == user_id and attempt.created_at > since
            )

    def list_failed_attempts(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        limit: int = 50,
    ) -> List[FailedLoginAttempt]:
        with self._data_lock:
            matches = [
                a
                for a in self.failed_attempts
                if (user_id is None or a.user_id == user_id)
                and (email is None or a.email == email)
            ]
            matches.sort(key=lambda a: a.created_at, reverse=True)
            return [replace(a) for a in matches[:limit]]

    def delete_failed_attempts(self, user_id: str) -> int:
        with self._data_lock:
            before = len(self.failed_attempts)
            self.failed_attempts = [a for a in self.failed_attempts if a.user_id != user_id]
            removed = before - len(self.failed_attempts)
            if removed:
                self._changed()
            return removed

    def get_lockout(
        self, user_id: str, active_at: Optional[datetime] = None
    ) -> Optional[AccountLockout]:
        with self._data_lock:
            lockout = self.lockouts.get(user_id)
            if not lockout:
                return None
            if active_at is not None and not lockout.is_active(active_at):
                return None
            return replace(lockout)

    def upsert_lockout(
        self, user_id: str, locked_until: datetime, reason: str
    ) -> AccountLockout:
        with self._data_lock:
            lockout = AccountLockout(user_id=user_id, locked_until=locked_until, reason=reason)
            self.lockouts[user_id] = lockout
            self._changed()
            return replace(lockout)

    def delete_lockout(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.lockouts.pop(user_id, None) is not None
            if removed:
                self._changed()
            return removed

    # mfa
    def _decrypted(self, device: MfaDevice) -> MfaDevice:
        return replace(
            device,
            secret=self._cipher.decrypt(device.secret),
            backup_codes=list(device.backup_codes),
        )

    def create_mfa_device(self, device: MfaDevice) -> MfaDevice:
        with self._data_lock:
            if device.id in self.mfa_devices:
                raise ConstraintViolation(
                    "mfa device already exists", {"id": device.id}, table="mfa_devices"
                )
            stored = replace(
                device,
                secret=self._cipher.encrypt(device.secret),
                backup_codes=list(device.backup_codes),
            )
            self.mfa_devices[device.id] = stored
            self._changed()
            return self._decrypted(stored)

    def get_mfa_device(self, device_id: str) -> Optional[MfaDevice]:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            return self._decrypted(device) if device else None

    def list_mfa_devices(self, user_id: str) -> List[MfaDevice]:
        with self._data_lock:
            devices = [d for d in self.mfa_devices.values() if d.user_id == user_id]
            devices.sort(key=lambda d: d.created_at, reverse=True)
            return [self._decrypted(d) for d in devices]

    def set_mfa_device_enabled(
        self, device_id: str, user_id: str, enabled: bool
    ) -> Optional[MfaDevice]:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            if not device or device.user_id != user_id:
                return None
            device.is_enabled = enabled
            device.updated_at = utcnow()
            self._changed()
            return self._decrypted(device)

    def mark_mfa_device_used(self, device_id: str, used_at: datetime) -> None:
        """Refresh last use and flip ``is_verified`` on the first success."""
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            if not device:
                return
            device.is_verified = True
            device.last_used_at = used_at
            self._changed()

    def consume_backup_code(self, device_id: str, code_hash: str) -> bool:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            if not device or code_hash not in device.backup_codes:
                return False
            device.backup_codes = [c for c in device.backup_codes if c != code_hash]
            self._changed()
            return True

    def replace_backup_codes(self, device_id: str, code_hashes: List[str]) -> None:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            if not device:
                return
            device.backup_codes = list(code_hashes)
            device.updated_at = utcnow()
            self._changed()

    def delete_mfa_device(self, device_id: str, user_id: str) -> bool:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            if not device or device.user_id != user_id:
                return False
            self.mfa_devices.pop(device_id, None)
            self._changed()
            return True

    def count_active_mfa_devices(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for d in self.mfa_devices.values()
                if d.user_id == user_id and d.is_enabled and d.is_verified
            )

    def record_mfa_attempt(
        self,
        user_id: str,
        device_id: str,
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MfaAttempt:
        with self._data_lock:
            attempt = MfaAttempt(
                id=new_id(),
                user_id=user_id,
                device_id=device_id,
                success=success,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.mfa_attempts.append(attempt)
            self._changed()
            return replace(attempt)

    def list_mfa_attempts(self, user_id: str, limit: int = 50) -> List[MfaAttempt]:
        with self._data_lock:
            attempts = [a for a in self.mfa_attempts if a.user_id == user_id]
            attempts.sort(key=lambda a: a.created_at, reverse=True)
            return [replace(a) for a in attempts[:limit]]

    # ip whitelist
    def create_whitelist_entry(self, entry: IpWhitelistEntry) -> IpWhitelistEntry:
        with self._data_lock:
            if entry.id in self.whitelist:
                raise ConstraintViolation(
                    "whitelist entry already exists", {"id": entry.id}, table="ip_whitelist"
                )
            self.whitelist[entry.id] = replace(entry)
            self._changed()
            return replace(entry)

    def get_whitelist_entry(self, entry_id: str, tenant_id: str) -> Optional[IpWhitelistEntry]:
        with self._data_lock:
            entry = self.whitelist.get(entry_id)
            if not entry or entry.tenant_id != tenant_id:
                return None
            return replace(entry)

    def list_whitelist_entries(
        self, tenant_id: str, *, active_only: bool = False
    ) -> List[IpWhitelistEntry]:
        with self._data_lock:
            entries = [
                e
                for e in self.whitelist.values()
                if e.tenant_id == tenant_id and (e.is_active or not active_only)
            ]
            entries.sort(key=lambda e: e.created_at, reverse=True)
            return [replace(e) for e in entries]

    def update_whitelist_entry(
        self, entry_id: str, tenant_id: str, changes: Dict[str, Any]
    ) -> Optional[IpWhitelistEntry]:
        with self._data_lock:
            entry = self.whitelist.get(entry_id)
            if not entry or entry.tenant_id != tenant_id:
                return None
            updated = replace(entry, **changes, updated_at=utcnow())
            self.whitelist[entry_id] = updated
            self._changed()
            return replace(updated)

    def delete_whitelist_entry(self, entry_id: str, tenant_id: str) -> bool:
        with self._data_lock:
            entry = self.whitelist.get(entry_id)
            if not entry or entry.tenant_id != tenant_id:
                return False
            self.whitelist.pop(entry_id, None)
            self._changed()
            return True

    # quotas
    def get_quota_limit(
        self, tenant_id: str, resource_type: str, *, for_update: bool = False
    ) -> Optional[QuotaLimit]:
        with self._data_lock:
            limit = self.quota_limits.get((tenant_id, resource_type))
            return replace(limit) if limit else None

    def list_quota_limits(self, tenant_id: Optional[str] = None) -> List[QuotaLimit]:
        with self._data_lock:
            return [
                replace(q)
                for q in self.quota_limits.values()
                if tenant_id is None or q.tenant_id == tenant_id
            ]

    def upsert_quota_limit(
        self,
        tenant_id: str,
        resource_type: str,
        *,
        limit_value: int,
        reset_period: str,
        warning_threshold: Optional[float],
        is_enforced: bool,
        now: datetime,
    ) -> QuotaLimit:
        with self._data_lock:
            key = (tenant_id, resource_type)
            existing = self.quota_limits.get(key)
            if existing:
                # Usage and reset anchor survive a limit change; bookkeeping
                # rows created by an increment get their first anchor here
                limit = replace(
                    existing,
                    limit_value=limit_value,
                    reset_period=reset_period,
                    warning_threshold=warning_threshold,
                    is_enforced=is_enforced,
                    last_reset_at=existing.last_reset_at or now,
                    updated_at=now,
                )
            else:
                limit = QuotaLimit(
                    tenant_id=tenant_id,
                    resource_type=resource_type,
                    limit_value=limit_value,
                    current_usage=0,
                    reset_period=reset_period,
                    warning_threshold=warning_threshold,
                    is_enforced=is_enforced,
                    last_reset_at=now,
                    updated_at=now,
                )
            self.quota_limits[key] = limit
            self._changed()
            return replace(limit)

    def increment_quota_usage(
        self, tenant_id: str, resource_type: str, amount: int, now: datetime
    ) -> QuotaLimit:
        with self._data_lock:
            key = (tenant_id, resource_type)
            limit = self.quota_limits.get(key)
            if limit is None:
                limit = QuotaLimit(
                    tenant_id=tenant_id,
                    resource_type=resource_type,
                    limit_value=0,
                    current_usage=amount,
                    reset_period=ResetPeriod.NEVER.value,
                    updated_at=now,
                )
                self.quota_limits[key] = limit
            else:
                limit.current_usage += amount
                limit.updated_at = now
            self._changed()
            return replace(limit)

    def reset_quota_usage(self, tenant_id: str, resource_type: str, reset_at: datetime) -> None:
        with self._data_lock:
            limit = self.quota_limits.get((tenant_id, resource_type))
            if not limit:
                return
            limit.current_usage = 0
            limit.last_reset_at = reset_at
            limit.updated_at = reset_at
            self._changed()

    def add_quota_usage_log(
        self,
        tenant_id: str,
        resource_type: str,
        amount: int,
        period_start: datetime,
        period_end: datetime,
    ) -> QuotaUsageLog:
        with self._data_lock:
            log = QuotaUsageLog(
                id=new_id(),
                tenant_id=tenant_id,
                resource_type=resource_type,
                amount=amount,
                period_start=period_start,
                period_end=period_end,
            )
            self.quota_usage_logs.append(log)
            self._changed()
            return replace(log)

    def list_quota_usage_logs(
        self, tenant_id: str, resource_type: Optional[str] = None, limit: int = 50
    ) -> List[QuotaUsageLog]:
        with self._data_lock:
            logs = [
                log
                for log in self.quota_usage_logs
                if log.tenant_id == tenant_id
                and (resource_type is None or log.resource_type == resource_type)
            ]
            logs.sort(key=lambda log: log.period_start, reverse=True)
            return [replace(log) for log in logs[:limit]]

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "security_store.json"

    def _persist_state(self) -> None:
        if not self.persist:
            return
        with self._data_lock:
            state = {
                "password_policies": [record_to_dict(p) for p in self.password_policies.values()],
                "password_history": [
                    record_to_dict(e) for entries in self.password_history.values() for e in entries
                ],
                "failed_attempts": [record_to_dict(a) for a in self.failed_attempts],
                "lockouts": [record_to_dict(lk) for lk in self.lockouts.values()],
                "mfa_devices": [record_to_dict(d) for d in self.mfa_devices.values()],
                "mfa_attempts": [record_to_dict(a) for a in self.mfa_attempts],
                "whitelist": [record_to_dict(e) for e in self.whitelist.values()],
                "quota_limits": [record_to_dict(q) for q in self.quota_limits.values()],
                "quota_usage_logs": [record_to_dict(log) for log in self.quota_usage_logs],
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state))
            os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_state_load_failed", error=str(exc), path=str(path))
            return False
        with self._data_lock:
            for row in state.get("password_policies", []):
                policy = record_from_row(PasswordPolicy, row)
                self.password_policies[policy.tenant_id] = policy
            for row in state.get("password_history", []):
                entry = record_from_row(PasswordHistoryEntry, row)
                self.password_history.setdefault(entry.user_id, []).append(entry)
            self.failed_attempts = [
                record_from_row(FailedLoginAttempt, row) for row in state.get("failed_attempts", [])
            ]
            for row in state.get("lockouts", []):
                lockout = record_from_row(AccountLockout, row)
                self.lockouts[lockout.user_id] = lockout
            for row in state.get("mfa_devices", []):
                device = record_from_row(MfaDevice, row)
                self.mfa_devices[device.id] = device
            self.mfa_attempts = [
                record_from_row(MfaAttempt, row) for row in state.get("mfa_attempts", [])
            ]
            for row in state.get("whitelist", []):
                entry = record_from_row(IpWhitelistEntry, row)
                self.whitelist[entry.id] = entry
            for row in state.get("quota_limits", []):
                limit = record_from_row(QuotaLimit, row)
                self.quota_limits[(limit.tenant_id, limit.resource_type)] = limit
            self.quota_usage_logs = [
                record_from_row(QuotaUsageLog, row) for row in state.get("quota_usage_logs", [])
            ]
        return True
