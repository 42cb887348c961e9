from datetime import datetime, timedelta, timezone

import pytest

from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.models import (
    IpWhitelistEntry,
    MfaDevice,
    PasswordPolicy,
    new_id,
)

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _device(user_id="user-1", secret="JBSWY3DPEHPK3PXP"):
    return MfaDevice(
        id=new_id(),
        user_id=user_id,
        type="totp",
        name="Phone",
        secret=secret,
        backup_codes=["h1", "h2"],
    )


def test_memory_store_persists_state_across_instances(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k1")
    store.upsert_password_policy(PasswordPolicy(tenant_id=None, min_length=11))
    store.upsert_password_policy(PasswordPolicy(tenant_id="tenant-a", min_length=14))
    store.add_password_history("user-1", "hash-a", NOW)
    store.add_failed_attempt("a@example.com", "user-1", created_at=NOW)
    store.upsert_lockout("user-1", NOW + timedelta(minutes=30), "Too many failed login attempts")
    device = store.create_mfa_device(_device())
    store.create_whitelist_entry(IpWhitelistEntry(id=new_id(), tenant_id="tenant-a", ip_address="10.0.0.0/8"))
    store.upsert_quota_limit(
        "tenant-a",
        "api_calls",
        limit_value=100,
        reset_period="daily",
        warning_threshold=75.0,
        is_enforced=True,
        now=NOW,
    )
    store.add_quota_usage_log("tenant-a", "api_calls", 42, NOW - timedelta(days=1), NOW)

    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k1")

    assert reloaded.get_password_policy(None).min_length == 11
    assert reloaded.get_password_policy("tenant-a").min_length == 14
    assert [e.password_hash for e in reloaded.list_password_history("user-1", 5)] == ["hash-a"]
    assert reloaded.count_failed_attempts("user-1", NOW - timedelta(minutes=1)) == 1
    assert reloaded.get_lockout("user-1", active_at=NOW).locked_until == NOW + timedelta(minutes=30)
    assert reloaded.get_mfa_device(device.id).secret == "JBSWY3DPEHPK3PXP"
    assert len(reloaded.list_whitelist_entries("tenant-a", active_only=True)) == 1
    limit = reloaded.get_quota_limit("tenant-a", "api_calls")
    assert limit.limit_value == 100
    assert limit.last_reset_at == NOW
    assert limit.warning_threshold == 75.0
    assert [log.amount for log in reloaded.list_quota_usage_logs("tenant-a")] == [42]


def test_mfa_secret_encrypted_in_state_file(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k1")
    store.create_mfa_device(_device(secret="PLAINTEXTSECRETVALUE"))

    state = (tmp_path / "state" / "security_store.json").read_text()
    assert "PLAINTEXTSECRETVALUE" not in state


def test_non_persistent_store_writes_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.add_password_history("user-1", "hash-a")
    assert not (tmp_path / "state" / "security_store.json").exists()


def test_corrupt_state_file_is_ignored(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "security_store.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))
    assert store.get_password_policy(None) is None


class TestTransactions:
    def test_rollback_restores_snapshot(self, memory_store):
        memory_store.add_failed_attempt("a@example.com", "user-1", created_at=NOW)

        with pytest.raises(RuntimeError):
            with memory_store.transaction():
                memory_store.add_failed_attempt("a@example.com", "user-1", created_at=NOW)
                memory_store.upsert_lockout("user-1", NOW + timedelta(minutes=5), "test")
                raise RuntimeError("boom")

        assert memory_store.count_failed_attempts("user-1", NOW - timedelta(minutes=1)) == 1
        assert memory_store.get_lockout("user-1") is None

    def test_nested_transaction_rolls_back_outer(self, memory_store):
        with pytest.raises(ValueError):
            with memory_store.transaction():
                memory_store.add_password_history("user-1", "outer")
                with memory_store.transaction():
                    memory_store.add_password_history("user-1", "inner")
                raise ValueError("late failure")

        assert memory_store.list_password_history("user-1", 5) == []

    def test_commit_persists_once(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        with store.transaction():
            store.add_password_history("user-1", "hash-a")
            assert not (tmp_path / "state" / "security_store.json").exists()
        assert (tmp_path / "state" / "security_store.json").exists()

    def test_user_guard_requires_transaction(self, memory_store):
        with pytest.raises(RuntimeError):
            memory_store.acquire_user_guard("user-1")
        with memory_store.transaction():
            memory_store.acquire_user_guard("user-1")


class TestRecords:
    def test_returned_records_are_copies(self, memory_store):
        memory_store.upsert_password_policy(PasswordPolicy(tenant_id="tenant-a"))
        policy = memory_store.get_password_policy("tenant-a")
        policy.min_length = 99
        assert memory_store.get_password_policy("tenant-a").min_length == 8

    def test_duplicate_device_id_rejected(self, memory_store):
        device = _device()
        memory_store.create_mfa_device(device)
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_mfa_device(device)
        assert excinfo.value.table == "mfa_devices"
        assert excinfo.value.detail == {"id": device.id, "table": "mfa_devices"}

    def test_consume_backup_code_once(self, memory_store):
        device = memory_store.create_mfa_device(_device())
        assert memory_store.consume_backup_code(device.id, "h1") is True
        assert memory_store.consume_backup_code(device.id, "h1") is False
        assert memory_store.get_mfa_device(device.id).backup_codes == ["h2"]

    def test_history_ties_break_by_insertion(self, memory_store):
        for value in ("first", "second", "third"):
            memory_store.add_password_history("user-1", value, NOW)
        assert memory_store.prune_password_history("user-1", 2) == 1
        assert [e.password_hash for e in memory_store.list_password_history("user-1", 5)] == [
            "third",
            "second",
        ]

    def test_expired_lockout_filtered_by_active_at(self, memory_store):
        memory_store.upsert_lockout("user-1", NOW, "test")
        assert memory_store.get_lockout("user-1", active_at=NOW) is None
        assert memory_store.get_lockout("user-1", active_at=NOW - timedelta(seconds=1)) is not None
        assert memory_store.get_lockout("user-1") is not None

        lockout = memory_store.get_lockout("user-1")
        assert lockout.is_active(NOW) is False
        assert lockout.is_active(NOW - timedelta(seconds=1)) is True

    def test_whitelist_scoped_by_tenant(self, memory_store):
        entry = memory_store.create_whitelist_entry(
            IpWhitelistEntry(id=new_id(), tenant_id="tenant-a", ip_address="10.0.0.1")
        )
        assert memory_store.get_whitelist_entry(entry.id, "tenant-b") is None
        assert memory_store.update_whitelist_entry(entry.id, "tenant-b", {"is_active": False}) is None
        assert memory_store.delete_whitelist_entry(entry.id, "tenant-b") is False
        assert memory_store.list_whitelist_entries("tenant-a", active_only=True)[0].id == entry.id
