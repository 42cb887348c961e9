from __future__ import annotations

import contextlib
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantguard.logging import get_logger
from tenantguard.storage.common import SecretCipher, record_from_row
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
)

REQUIRED_TABLES = (
    "password_policies",
    "password_history",
    "failed_login_attempts",
    "account_lockouts",
    "mfa_devices",
    "mfa_attempts",
    "ip_whitelist",
    "quota_limits",
    "quota_usage_logs",
)

_WHITELIST_COLUMNS = frozenset({"ip_address", "description", "is_active"})


class PostgresStore:
    """Postgres-backed security store.

    Each public method runs on its own pooled connection unless called inside
    ``transaction()``, in which case it joins the transaction's connection.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Any] = ContextVar(f"tenantguard_tx_{id(self)}", default=None)
        self._cipher = SecretCipher(mfa_encryption_key)
        self._verify_required_schema()

    def _connect(self):
        conn = self._tx_conn.get()
        if conn is not None:
            return contextlib.nullcontext(conn)
        return self.pool.connection()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        conn = self._tx_conn.get()
        if conn is not None:
            # Nested block becomes a savepoint on the outer connection
            with conn.transaction():
                yield self
            return
        with self.pool.connection() as conn:
            token = self._tx_conn.set(conn)
            try:
                with conn.transaction():
                    yield self
            finally:
                self._tx_conn.reset(token)

    def acquire_user_guard(self, user_id: str) -> None:
        """Serialize lockout counting per user until the transaction ends."""
        if self._tx_conn.get() is None:
            raise RuntimeError("acquire_user_guard must be called inside transaction()")
        with self._connect() as conn:
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (user_id,))

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/security_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # password policy
    def get_password_policy(self, tenant_id: Optional[str]) -> Optional[PasswordPolicy]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_policies WHERE tenant_id IS NOT DISTINCT FROM %s",
                (tenant_id,),
            ).fetchone()
        return record_from_row(PasswordPolicy, row) if row else None

    def upsert_password_policy(self, policy: PasswordPolicy) -> PasswordPolicy:
        # The global row has a NULL tenant, which a plain unique index cannot
        # conflict on, so update-then-insert inside one transaction.
        values = (
            policy.min_length,
            policy.require_uppercase,
            policy.require_lowercase,
            policy.require_numbers,
            policy.require_special_chars,
            policy.max_age_days,
            policy.prevent_reuse_count,
            policy.lockout_attempts,
            policy.lockout_duration_minutes,
        )
        with self.transaction():
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE password_policies
                    SET min_length = %s, require_uppercase = %s, require_lowercase = %s,
                        require_numbers = %s, require_special_chars = %s, max_age_days = %s,
                        prevent_reuse_count = %s, lockout_attempts = %s,
                        lockout_duration_minutes = %s, updated_at = now()
                    WHERE tenant_id IS NOT DISTINCT FROM %s
                    RETURNING *
                    """,
                    values + (policy.tenant_id,),
                ).fetchone()
                if not row:
                    row = conn.execute(
                        """
                        INSERT INTO password_policies (
                            min_length, require_uppercase, require_lowercase,
                            require_numbers, require_special_chars, max_age_days,
                            prevent_reuse_count, lockout_attempts,
                            lockout_duration_minutes, tenant_id, updated_at
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
                        RETURNING *
                        """,
                        values + (policy.tenant_id,),
                    ).fetchone()
        return record_from_row(PasswordPolicy, row)

    def add_password_history(
        self, user_id: str, password_hash: str, created_at: Optional[datetime] = None
    ) -> PasswordHistoryEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO password_history (user_id, password_hash, created_at)
                VALUES (%s, %s, COALESCE(%s, now()))
                RETURNING *
                """,
                (user_id, password_hash, created_at),
            ).fetchone()
        return record_from_row(PasswordHistoryEntry, row)

    def list_password_history(self, user_id: str, limit: int) -> List[PasswordHistoryEntry]:
        if limit <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM password_history
                WHERE user_id = %s
                ORDER BY created_at DESC, seq DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [record_from_row(PasswordHistoryEntry, row) for row in rows]

    def prune_password_history(self, user_id: str, keep: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM password_history
                WHERE user_id = %s
                  AND id NOT IN (
                    SELECT id FROM password_history
                    WHERE user_id = %s
                    ORDER BY created_at DESC, seq DESC
                    LIMIT %s
                  )
                """,
                (user_id, user_id, max(keep, 0)),
            )
            return result.rowcount

    # failed logins / lockouts
    def add_failed_attempt(
        self,
        email: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> FailedLoginAttempt:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO failed_login_attempts (user_id, email, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, COALESCE(%s, now()))
                RETURNING *
                """,
                (user_id, email, ip_address, user_agent, created_at),
            ).fetchone()
        return record_from_row(FailedLoginAttempt, row)

    def count_failed_attempts(self, user_id: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count FROM failed_login_attempts
                WHERE user_id = %s AND created_at > %s
                """,
                (user_id, since),
            ).fetchone()
        return int(row["count"]) if row else 0

    def list_failed_attempts(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        limit: int = 50,
    ) -> List[FailedLoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM failed_login_attempts
                WHERE (%s::text IS NULL OR user_id = %s)
                  AND (%s::text IS NULL OR email = %s)
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, user_id, email, email, limit),
            ).fetchall()
        return [record_from_row(FailedLoginAttempt, row) for row in rows]

    def delete_failed_attempts(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM failed_login_attempts WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def get_lockout(
        self, user_id: str, active_at: Optional[datetime] = None
    ) -> Optional[AccountLockout]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM account_lockouts
                WHERE user_id = %s AND (%s::timestamptz IS NULL OR locked_until > %s)
                """,
                (user_id, active_at, active_at),
            ).fetchone()
        return record_from_row(AccountLockout, row) if row else None

    def upsert_lockout(
        self, user_id: str, locked_until: datetime, reason: str
    ) -> AccountLockout:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO account_lockouts (user_id, locked_until, reason)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id)
                DO UPDATE SET locked_until = EXCLUDED.locked_until, reason = EXCLUDED.reason
                RETURNING *
                """,
                (user_id, locked_until, reason),
            ).fetchone()
        return record_from_row(AccountLockout, row)

    def delete_lockout(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM account_lockouts WHERE user_id = %s", (user_id,))
            return result.rowcount > 0

    # mfa
    def _device_from_row(self, row: Dict[str, Any]) -> MfaDevice:
        device = record_from_row(MfaDevice, row)
        device.secret = self._cipher.decrypt(device.secret)
        device.backup_codes = list(device.backup_codes or [])
        return device

    def create_mfa_device(self, device: MfaDevice) -> MfaDevice:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO mfa_devices (
                        id, user_id, type, name, secret, backup_codes,
                        is_enabled, is_verified, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        device.id,
                        device.user_id,
                        device.type,
                        device.name,
                        self._cipher.encrypt(device.secret),
                        list(device.backup_codes),
                        device.is_enabled,
                        device.is_verified,
                        device.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "mfa device already exists", {"id": device.id}, table="mfa_devices"
            )
        except errors.CheckViolation as exc:
            raise ConstraintViolation(str(exc), {"type": device.type}, table="mfa_devices")
        return self._device_from_row(row)

    def get_mfa_device(self, device_id: str) -> Optional[MfaDevice]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM mfa_devices WHERE id = %s", (device_id,)).fetchone()
        return self._device_from_row(row) if row else None

    def list_mfa_devices(self, user_id: str) -> List[MfaDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mfa_devices WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def set_mfa_device_enabled(
        self, device_id: str, user_id: str, enabled: bool
    ) -> Optional[MfaDevice]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_devices SET is_enabled = %s, updated_at = now()
                WHERE id = %s AND user_id = %s
                RETURNING *
                """,
                (enabled, device_id, user_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def mark_mfa_device_used(self, device_id: str, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE mfa_devices SET is_verified = TRUE, last_used_at = %s WHERE id = %s",
                (used_at, device_id),
            )

    def consume_backup_code(self, device_id: str, code_hash: str) -> bool:
        # Conditional update: only one concurrent caller can remove a given hash
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE mfa_devices
                SET backup_codes = array_remove(backup_codes, %s), updated_at = now()
                WHERE id = %s AND %s = ANY(backup_codes)
                """,
                (code_hash, device_id, code_hash),
            )
            return result.rowcount > 0

    def replace_backup_codes(self, device_id: str, code_hashes: List[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE mfa_devices SET backup_codes = %s, updated_at = now() WHERE id = %s",
                (list(code_hashes), device_id),
            )

    def delete_mfa_device(self, device_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM mfa_devices WHERE id = %s AND user_id = %s", (device_id, user_id)
            )
            return result.rowcount > 0

    def count_active_mfa_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count FROM mfa_devices
                WHERE user_id = %s AND is_enabled = TRUE AND is_verified = TRUE
                """,
                (user_id,),
            ).fetchone()
        return int(row["count"]) if row else 0

    def record_mfa_attempt(
        self,
        user_id: str,
        device_id: str,
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MfaAttempt:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO mfa_attempts (user_id, device_id, success, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (user_id, device_id, success, ip_address, user_agent),
            ).fetchone()
        return record_from_row(MfaAttempt, row)

    def list_mfa_attempts(self, user_id: str, limit: int = 50) -> List[MfaAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mfa_attempts WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [record_from_row(MfaAttempt, row) for row in rows]

    # ip whitelist
    def create_whitelist_entry(self, entry: IpWhitelistEntry) -> IpWhitelistEntry:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO ip_whitelist (
                        id, tenant_id, ip_address, description, is_active, created_by, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        entry.id,
                        entry.tenant_id,
                        entry.ip_address,
                        entry.description,
                        entry.is_active,
                        entry.created_by,
                        entry.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "whitelist entry already exists", {"id": entry.id}, table="ip_whitelist"
            )
        return record_from_row(IpWhitelistEntry, row)

    def get_whitelist_entry(self, entry_id: str, tenant_id: str) -> Optional[IpWhitelistEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ip_whitelist WHERE id = %s AND tenant_id = %s",
                (entry_id, tenant_id),
            ).fetchone()
        return record_from_row(IpWhitelistEntry, row) if row else None

    def list_whitelist_entries(
        self, tenant_id: str, *, active_only: bool = False
    ) -> List[IpWhitelistEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM ip_whitelist
                WHERE tenant_id = %s AND (NOT %s OR is_active = TRUE)
                ORDER BY created_at DESC
                """,
                (tenant_id, active_only),
            ).fetchall()
        return [record_from_row(IpWhitelistEntry, row) for row in rows]

    def update_whitelist_entry(
        self, entry_id: str, tenant_id: str, changes: Dict[str, Any]
    ) -> Optional[IpWhitelistEntry]:
        unknown = set(changes) - _WHITELIST_COLUMNS
        if unknown:
            raise ValueError(f"unknown whitelist columns: {sorted(unknown)}")
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder())
            for column in changes
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL(
            "UPDATE ip_whitelist SET {} WHERE id = %s AND tenant_id = %s RETURNING *"
        ).format(sql.SQL(", ").join(assignments))
        with self._connect() as conn:
            row = conn.execute(query, (*changes.values(), entry_id, tenant_id)).fetchone()
        return record_from_row(IpWhitelistEntry, row) if row else None

    def delete_whitelist_entry(self, entry_id: str, tenant_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM ip_whitelist WHERE id = %s AND tenant_id = %s", (entry_id, tenant_id)
            )
            return result.rowcount > 0

    # quotas
    @staticmethod
    def _quota_from_row(row: Dict[str, Any]) -> QuotaLimit:
        limit = record_from_row(QuotaLimit, row)
        limit.limit_value = int(limit.limit_value)
        limit.current_usage = int(limit.current_usage)
        if limit.warning_threshold is not None:
            limit.warning_threshold = float(limit.warning_threshold)
        return limit

    def get_quota_limit(
        self, tenant_id: str, resource_type: str, *, for_update: bool = False
    ) -> Optional[QuotaLimit]:
        query = "SELECT * FROM quota_limits WHERE tenant_id = %s AND resource_type = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(query, (tenant_id, resource_type)).fetchone()
        return self._quota_from_row(row) if row else None

    def list_quota_limits(self, tenant_id: Optional[str] = None) -> List[QuotaLimit]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM quota_limits WHERE (%s::text IS NULL OR tenant_id = %s)",
                (tenant_id, tenant_id),
            ).fetchall()
        return [self._quota_from_row(row) for row in rows]

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO quota_limits (
                    tenant_id, resource_type, limit_value, current_usage,
                    reset_period, warning_threshold, is_enforced, last_reset_at, updated_at
                )
                VALUES (%s, %s, %s, 0, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, resource_type)
                DO UPDATE SET
                    limit_value = EXCLUDED.limit_value,
                    reset_period = EXCLUDED.reset_period,
                    warning_threshold = EXCLUDED.warning_threshold,
                    is_enforced = EXCLUDED.is_enforced,
                    last_reset_at = COALESCE(quota_limits.last_reset_at, EXCLUDED.last_reset_at),
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    tenant_id,
                    resource_type,
                    limit_value,
                    reset_period,
                    warning_threshold,
                    is_enforced,
                    now,
                    now,
                ),
            ).fetchone()
        return self._quota_from_row(row)

    def increment_quota_usage(
        self, tenant_id: str, resource_type: str, amount: int, now: datetime
    ) -> QuotaLimit:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO quota_limits (
                    tenant_id, resource_type, limit_value, current_usage, reset_period, updated_at
                )
                VALUES (%s, %s, 0, %s, %s, %s)
                ON CONFLICT (tenant_id, resource_type)
                DO UPDATE SET
                    current_usage = quota_limits.current_usage + EXCLUDED.current_usage,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (tenant_id, resource_type, amount, ResetPeriod.NEVER.value, now),
            ).fetchone()
        return self._quota_from_row(row)

    def reset_quota_usage(self, tenant_id: str, resource_type: str, reset_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE quota_limits
                SET current_usage = 0, last_reset_at = %s, updated_at = %s
                WHERE tenant_id = %s AND resource_type = %s
                """,
                (reset_at, reset_at, tenant_id, resource_type),
            )

    def add_quota_usage_log(
        self,
        tenant_id: str,
        resource_type: str,
        amount: int,
        period_start: datetime,
        period_end: datetime,
    ) -> QuotaUsageLog:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO quota_usage_logs (tenant_id, resource_type, amount, period_start, period_end)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (tenant_id, resource_type, amount, period_start, period_end),
            ).fetchone()
        log = record_from_row(QuotaUsageLog, row)
        log.amount = int(log.amount)
        return log

    def list_quota_usage_logs(
        self, tenant_id: str, resource_type: Optional[str] = None, limit: int = 50
    ) -> List[QuotaUsageLog]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM quota_usage_logs
                WHERE tenant_id = %s AND (%s::text IS NULL OR resource_type = %s)
                ORDER BY period_start DESC
                LIMIT %s
                """,
                (tenant_id, resource_type, resource_type, limit),
            ).fetchall()
        logs = [record_from_row(QuotaUsageLog, row) for row in rows]
        for log in logs:
            log.amount = int(log.amount)
        return logs
