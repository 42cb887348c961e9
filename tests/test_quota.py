import math
import threading
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from tenantguard.service.errors import ValidationError
from tenantguard.service.quota import QuotaService, is_reset_due
from tenantguard.storage.models import QuotaLimit, ResetPeriod, ResourceType


@pytest.fixture
def quota(memory_store, clock):
    return QuotaService(memory_store, now_fn=clock)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestIsResetDue:
    @pytest.mark.parametrize(
        "period,last,now,expected",
        [
            ("hourly", _utc(2026, 1, 1, 10, 0), _utc(2026, 1, 1, 10, 59), False),
            ("hourly", _utc(2026, 1, 1, 10, 0), _utc(2026, 1, 1, 11, 0), True),
            ("daily", _utc(2026, 1, 1, 10, 0), _utc(2026, 1, 2, 9, 59), False),
            ("daily", _utc(2026, 1, 1, 10, 0), _utc(2026, 1, 2, 10, 0), True),
            ("monthly", _utc(2026, 1, 31, 23, 0), _utc(2026, 2, 1, 0, 0), True),
            ("monthly", _utc(2026, 1, 1, 0, 0), _utc(2026, 1, 31, 23, 59), False),
            ("monthly", _utc(2025, 2, 10), _utc(2026, 2, 10), True),
            ("yearly", _utc(2025, 12, 31, 23, 59), _utc(2026, 1, 1, 0, 0), True),
            ("yearly", _utc(2026, 1, 1), _utc(2026, 12, 31), False),
            ("never", _utc(2000, 1, 1), _utc(2026, 1, 1), False),
        ],
    )
    def test_periods(self, period, last, now, expected):
        assert is_reset_due(period, last, now) is expected

    def test_missing_anchor_is_never_due(self):
        assert is_reset_due("hourly", None, _utc(2026, 1, 1)) is False


class TestCheckQuota:
    def test_unlimited_without_row(self, quota):
        result = quota.check_quota("tenant-a", "api_calls", amount=10_000)
        assert result.allowed is True
        assert result.remaining == math.inf
        assert result.warning is False

    def test_enforced_limit(self, quota):
        quota.set_limit("tenant-a", ResourceType.STUDENTS, 10, reset_period="never")
        quota.increment_usage("tenant-a", ResourceType.STUDENTS, 8)

        assert quota.check_quota("tenant-a", "students", amount=2).allowed is True
        denied = quota.check_quota("tenant-a", "students", amount=3)
        assert denied.allowed is False
        assert denied.remaining == 2

    def test_remaining_never_negative(self, quota):
        quota.set_limit("tenant-a", "users", 5, reset_period="never")
        quota.increment_usage("tenant-a", "users", 7)

        result = quota.check_quota("tenant-a", "users")
        assert result.allowed is False
        assert result.remaining == 0

    def test_unenforced_limit_is_informational(self, quota):
        quota.set_limit("tenant-a", "storage_gb", 10, reset_period="never", is_enforced=False)
        quota.increment_usage("tenant-a", "storage_gb", 15)

        result = quota.check_quota("tenant-a", "storage_gb", amount=5)
        assert result.allowed is True
        assert result.remaining == -5

    def test_warning_threshold(self, quota):
        quota.set_limit("tenant-a", "api_calls", 100, warning_threshold=80)
        quota.increment_usage("tenant-a", "api_calls", 79)
        assert quota.check_quota("tenant-a", "api_calls").warning is False

        quota.increment_usage("tenant-a", "api_calls", 1)
        result = quota.check_quota("tenant-a", "api_calls")
        assert result.warning is True
        assert result.allowed is True

    def test_daily_reset_logs_usage(self, quota, clock):
        start = clock.now
        quota.set_limit("tenant-a", "api_calls", 100, reset_period=ResetPeriod.DAILY)
        quota.increment_usage("tenant-a", "api_calls", 80)

        clock.advance(hours=25)
        result = quota.check_quota("tenant-a", "api_calls", amount=50)

        assert result.allowed is True
        assert result.remaining == 100
        logs = quota.list_usage_logs("tenant-a", "api_calls")
        assert len(logs) == 1
        assert logs[0].amount == 80
        assert logs[0].period_start == start
        assert logs[0].period_end == clock.now
        limit = quota.get_limit("tenant-a", "api_calls")
        assert limit.current_usage == 0
        assert limit.last_reset_at == clock.now

    def test_unenforced_limit_skips_reset(self, quota, clock):
        quota.set_limit("tenant-a", "api_calls", 100, reset_period="hourly", is_enforced=False)
        quota.increment_usage("tenant-a", "api_calls", 30)
        clock.advance(hours=2)
        # Informational counters are not reset by checks
        quota.check_quota("tenant-a", "api_calls")
        assert quota.get_limit("tenant-a", "api_calls").current_usage == 30


class TestIncrementUsage:
    def test_creates_unlimited_bookkeeping_row(self, quota):
        limit = quota.increment_usage("tenant-a", "api_calls", 3)
        assert limit.current_usage == 3
        assert limit.limit_value == 0
        assert limit.reset_period == "never"
        assert quota.increment_usage("tenant-a", "api_calls").current_usage == 4

    def test_increment_applies_due_reset_first(self, quota, clock):
        quota.set_limit("tenant-a", "api_calls", 100, reset_period="hourly")
        quota.increment_usage("tenant-a", "api_calls", 40)
        clock.advance(hours=1)

        limit = quota.increment_usage("tenant-a", "api_calls", 5)
        assert limit.current_usage == 5
        assert [log.amount for log in quota.list_usage_logs("tenant-a")] == [40]

    @pytest.mark.parametrize("amount", [-1, 1.5, True])
    def test_rejects_bad_amount(self, quota, amount):
        with pytest.raises(ValidationError):
            quota.increment_usage("tenant-a", "api_calls", amount)


class TestSetLimit:
    def test_new_row_defaults(self, quota, clock):
        limit = quota.set_limit("tenant-a", "users", 50)
        assert limit.reset_period == "monthly"
        assert limit.current_usage == 0
        assert limit.last_reset_at == clock.now
        assert limit.is_enforced is True

    def test_existing_row_keeps_usage(self, quota, clock):
        quota.increment_usage("tenant-a", "users", 12)
        limit = quota.set_limit("tenant-a", "users", 20, warning_threshold=90)
        assert limit.current_usage == 12
        assert limit.limit_value == 20
        assert limit.warning_threshold == 90.0
        # Bookkeeping rows have no anchor until a limit is set
        assert limit.last_reset_at == clock.now

        clock.advance(minutes=5)
        later = quota.set_limit("tenant-a", "users", 30)
        assert later.last_reset_at == clock.now - timedelta(minutes=5)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"limit_value": -1},
            {"limit_value": 10, "warning_threshold": 101},
            {"limit_value": 10, "warning_threshold": -0.5},
            {"limit_value": 10, "reset_period": "weekly"},
        ],
    )
    def test_validation(self, quota, kwargs):
        with pytest.raises(ValidationError):
            quota.set_limit("tenant-a", "users", **kwargs)
        assert quota.get_limit("tenant-a", "users") is None


class TestMaybeResetAndSweep:
    def test_maybe_reset_updates_limit_in_place(self, quota, memory_store, clock):
        quota.set_limit("tenant-a", "api_calls", 100, reset_period="hourly")
        quota.increment_usage("tenant-a", "api_calls", 10)
        limit = memory_store.get_quota_limit("tenant-a", "api_calls")

        assert quota.maybe_reset(limit, clock.now + timedelta(minutes=30)) is False
        assert quota.maybe_reset(limit, clock.now + timedelta(hours=1)) is True
        assert limit.current_usage == 0
        assert memory_store.get_quota_limit("tenant-a", "api_calls").current_usage == 0

    def test_row_without_anchor_never_resets(self, quota, clock):
        limit = QuotaLimit("tenant-a", "api_calls", limit_value=5, current_usage=5, reset_period="hourly")
        assert quota.maybe_reset(limit, clock.now + timedelta(days=30)) is False
        assert limit.current_usage == 5

    def test_sweep_resets_only_due_counters(self, quota, clock):
        quota.set_limit("tenant-a", "api_calls", 100, reset_period="hourly")
        quota.set_limit("tenant-b", "api_calls", 100, reset_period="daily")
        quota.set_limit("tenant-c", "users", 100, reset_period="never")
        for tenant in ("tenant-a", "tenant-b", "tenant-c"):
            quota.increment_usage(tenant, "api_calls" if tenant != "tenant-c" else "users", 7)

        assert quota.sweep_resets(clock.now + timedelta(hours=2)) == 1
        assert quota.get_limit("tenant-a", "api_calls").current_usage == 0
        assert quota.get_limit("tenant-b", "api_calls").current_usage == 7
        assert quota.sweep_resets(clock.now + timedelta(hours=2)) == 0

    def test_usage_logs_newest_first_with_limit(self, quota, clock):
        quota.set_limit("tenant-a", "api_calls", 100, reset_period="hourly")
        for usage in (1, 2, 3):
            quota.increment_usage("tenant-a", "api_calls", usage)
            clock.advance(hours=1)
            quota.check_quota("tenant-a", "api_calls")

        assert [log.amount for log in quota.list_usage_logs("tenant-a")] == [3, 2, 1]
        assert [log.amount for log in quota.list_usage_logs("tenant-a", limit=2)] == [3, 2]
        assert quota.list_usage_logs("tenant-a", "users") == []


class TestConcurrentChecks:
    def test_due_counter_resets_once_under_concurrent_checks(self, quota, clock):
        quota.set_limit("tenant-a", "api_calls", 100, reset_period="daily")
        quota.increment_usage("tenant-a", "api_calls", 40)
        clock.advance(days=1)
        barrier = threading.Barrier(2)
        results: List = []
        errors: List[Exception] = []

        def check():
            try:
                barrier.wait(timeout=5)
                results.append(quota.check_quota("tenant-a", "api_calls"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=check) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 0, f"Thread errors: {errors}"
        logs = quota.list_usage_logs("tenant-a", "api_calls")
        assert len(logs) == 1
        assert logs[0].amount == 40
        assert [r.remaining for r in results] == [100, 100]
        assert quota.get_limit("tenant-a", "api_calls").current_usage == 0
