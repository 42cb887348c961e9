from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, ContextManager, List, Optional, Protocol, Union

from tenantguard.logging import get_logger, log_gate_decision
from tenantguard.service.errors import ValidationError
from tenantguard.storage.models import QuotaLimit, QuotaUsageLog, ResetPeriod

logger = get_logger(__name__)

Number = Union[int, float]


class QuotaStore(Protocol):
    def transaction(self) -> ContextManager[object]: ...

    def get_quota_limit(
        self, tenant_id: str, resource_type: str, *, for_update: bool = False
    ) -> Optional[QuotaLimit]: ...

    def list_quota_limits(self, tenant_id: Optional[str] = None) -> List[QuotaLimit]: ...

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
    ) -> QuotaLimit: ...

    def increment_quota_usage(
        self, tenant_id: str, resource_type: str, amount: int, now: datetime
    ) -> QuotaLimit: ...

    def reset_quota_usage(self, tenant_id: str, resource_type: str, reset_at: datetime) -> None: ...

    def add_quota_usage_log(
        self,
        tenant_id: str,
        resource_type: str,
        amount: int,
        period_start: datetime,
        period_end: datetime,
    ) -> QuotaUsageLog: ...

    def list_quota_usage_logs(
        self, tenant_id: str, resource_type: Optional[str] = None, limit: int = 50
    ) -> List[QuotaUsageLog]: ...


@dataclass
class QuotaCheck:
    allowed: bool
    # math.inf when the tenant has no limit for the resource
    remaining: Number
    warning: bool = False


def _name(value: Union[str, Enum]) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def is_reset_due(period: str, last_reset_at: Optional[datetime], now: datetime) -> bool:
    """Whether a counter last reset at ``last_reset_at`` is due at ``now``.

    Hourly and daily periods are elapsed durations; monthly and yearly follow
    calendar boundaries.
    """
    if last_reset_at is None:
        return False
    if period == ResetPeriod.HOURLY.value:
        return now - last_reset_at >= timedelta(hours=1)
    if period == ResetPeriod.DAILY.value:
        return now - last_reset_at >= timedelta(hours=24)
    if period == ResetPeriod.MONTHLY.value:
        return (now.year, now.month) != (last_reset_at.year, last_reset_at.month)
    if period == ResetPeriod.YEARLY.value:
        return now.year != last_reset_at.year
    return False


class QuotaService:
    """Per-tenant resource counters with lazy periodic resets.

    Resets are applied when a counter is checked or incremented. Deployments
    that want resets without traffic run ``sweep_resets`` from a scheduler.
    """

    def __init__(
        self,
        store: QuotaStore,
        *,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._now_fn()

    def maybe_reset(self, limit: QuotaLimit, now: Optional[datetime] = None) -> bool:
        """Snapshot and zero ``limit`` if its period has rolled over.

        ``limit`` is updated in place so callers can keep using it.
        """
        now = now or self._now()
        if not is_reset_due(limit.reset_period, limit.last_reset_at, now):
            return False
        with self.store.transaction():
            self.store.add_quota_usage_log(
                limit.tenant_id,
                limit.resource_type,
                limit.current_usage,
                limit.last_reset_at,
                now,
            )
            self.store.reset_quota_usage(limit.tenant_id, limit.resource_type, now)
        self.logger.info(
            "quota_reset",
            tenant_id=limit.tenant_id,
            resource_type=limit.resource_type,
            reset_period=limit.reset_period,
            usage=limit.current_usage,
        )
        limit.current_usage = 0
        limit.last_reset_at = now
        limit.updated_at = now
        return True

    def check_quota(
        self,
        tenant_id: str,
        resource_type: Union[str, Enum],
        amount: int = 1,
    ) -> QuotaCheck:
        resource = _name(resource_type)
        now = self._now()
        with self.store.transaction():
            limit = self.store.get_quota_limit(tenant_id, resource, for_update=True)
            if limit is None:
                return QuotaCheck(allowed=True, remaining=math.inf)
            if not limit.is_enforced:
                return QuotaCheck(
                    allowed=True, remaining=limit.limit_value - limit.current_usage
                )
            self.maybe_reset(limit, now)

        remaining = limit.limit_value - limit.current_usage
        allowed = remaining >= amount
        warning = limit.warning_threshold is not None and (
            limit.current_usage >= limit.limit_value * limit.warning_threshold / 100
        )
        if warning:
            self.logger.info(
                "quota_warning_threshold",
                tenant_id=tenant_id,
                resource_type=resource,
                usage=limit.current_usage,
                limit=limit.limit_value,
                threshold=limit.warning_threshold,
            )
        log_gate_decision(
            "quota",
            allowed,
            logger=self.logger,
            tenant_id=tenant_id,
            resource_type=resource,
            requested=amount,
            remaining=max(0, remaining),
        )
        return QuotaCheck(allowed=allowed, remaining=max(0, remaining), warning=warning)

    def increment_usage(
        self,
        tenant_id: str,
        resource_type: Union[str, Enum],
        amount: int = 1,
    ) -> QuotaLimit:
        """Unconditional bookkeeping; callers enforce with ``check_quota`` first."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError("amount must be a non-negative integer", detail={"amount": amount})
        resource = _name(resource_type)
        now = self._now()
        with self.store.transaction():
            existing = self.store.get_quota_limit(tenant_id, resource, for_update=True)
            if existing is not None:
                self.maybe_reset(existing, now)
            limit = self.store.increment_quota_usage(tenant_id, resource, amount, now)
        self.logger.debug(
            "quota_usage_incremented",
            tenant_id=tenant_id,
            resource_type=resource,
            amount=amount,
            usage=limit.current_usage,
        )
        return limit

    def set_limit(
        self,
        tenant_id: str,
        resource_type: Union[str, Enum],
        limit_value: int,
        reset_period: Union[str, ResetPeriod] = ResetPeriod.MONTHLY,
        warning_threshold: Optional[float] = None,
        is_enforced: bool = True,
    ) -> QuotaLimit:
        if isinstance(limit_value, bool) or not isinstance(limit_value, int) or limit_value < 0:
            raise ValidationError(
                "limit_value must be a non-negative integer", detail={"limit_value": limit_value}
            )
        try:
            period = ResetPeriod(_name(reset_period)).value
        except ValueError:
            raise ValidationError(
                "Unknown reset period", detail={"reset_period": _name(reset_period)}
            )
        if warning_threshold is not None:
            if isinstance(warning_threshold, bool) or not isinstance(warning_threshold, (int, float)):
                raise ValidationError("warning_threshold must be a number")
            if not 0 <= warning_threshold <= 100:
                raise ValidationError(
                    "warning_threshold must be between 0 and 100",
                    detail={"warning_threshold": warning_threshold},
                )
            warning_threshold = float(warning_threshold)
        resource = _name(resource_type)
        limit = self.store.upsert_quota_limit(
            tenant_id,
            resource,
            limit_value=limit_value,
            reset_period=period,
            warning_threshold=warning_threshold,
            is_enforced=bool(is_enforced),
            now=self._now(),
        )
        self.logger.info(
            "quota_limit_set",
            tenant_id=tenant_id,
            resource_type=resource,
            limit=limit_value,
            reset_period=period,
            is_enforced=bool(is_enforced),
        )
        return limit

    def get_limit(self, tenant_id: str, resource_type: Union[str, Enum]) -> Optional[QuotaLimit]:
        return self.store.get_quota_limit(tenant_id, _name(resource_type))

    def list_usage_logs(
        self,
        tenant_id: str,
        resource_type: Optional[Union[str, Enum]] = None,
        limit: int = 50,
    ) -> List[QuotaUsageLog]:
        resource = _name(resource_type) if resource_type is not None else None
        return self.store.list_quota_usage_logs(tenant_id, resource, limit=limit)

    def sweep_resets(self, now: Optional[datetime] = None) -> int:
        """Apply due resets to every counter; returns how many were reset."""
        now = now or self._now()
        reset = 0
        for candidate in self.store.list_quota_limits():
            if not is_reset_due(candidate.reset_period, candidate.last_reset_at, now):
                continue
            with self.store.transaction():
                limit = self.store.get_quota_limit(
                    candidate.tenant_id, candidate.resource_type, for_update=True
                )
                if limit is not None and self.maybe_reset(limit, now):
                    reset += 1
        self.logger.info("quota_sweep_completed", reset=reset)
        return reset


__all__ = [
    "QuotaCheck",
    "QuotaService",
    "QuotaStore",
    "is_reset_due",
]
