import pytest

from tenantguard.service.errors import NotFoundError, ValidationError
from tenantguard.service.whitelist import ENTRY_NOT_FOUND, WhitelistService
from tenantguard.storage.models import WhitelistEntryPatch


class DictCache:
    """In-process stand-in for the Redis whitelist cache."""

    def __init__(self, fail: bool = False):
        self.entries = {}
        self.invalidated = []
        self.reads = 0
        self.fail = fail

    def get_active_entries(self, tenant_id):
        self.reads += 1
        if self.fail:
            raise ConnectionError("redis down")
        return self.entries.get(tenant_id)

    def set_active_entries(self, tenant_id, entries):
        if self.fail:
            raise ConnectionError("redis down")
        self.entries[tenant_id] = list(entries)

    def invalidate(self, tenant_id):
        self.invalidated.append(tenant_id)
        if self.fail:
            raise ConnectionError("redis down")
        self.entries.pop(tenant_id, None)


@pytest.fixture
def whitelist(memory_store, clock):
    return WhitelistService(memory_store, now_fn=clock)


class TestIsIpWhitelisted:
    def test_unconfigured_tenant_is_open(self, whitelist):
        assert whitelist.is_ip_whitelisted("tenant-a", "203.0.113.50") is True

    def test_configured_tenant_requires_match(self, whitelist):
        whitelist.create_entry("tenant-a", "10.0.0.0/8", "office")
        whitelist.create_entry("tenant-a", "203.0.113.7")

        assert whitelist.is_ip_whitelisted("tenant-a", "10.9.8.7") is True
        assert whitelist.is_ip_whitelisted("tenant-a", "203.0.113.7") is True
        assert whitelist.is_ip_whitelisted("tenant-a", "203.0.113.8") is False
        assert whitelist.is_ip_whitelisted("tenant-a", "garbage") is False

    def test_tenants_are_isolated(self, whitelist):
        whitelist.create_entry("tenant-a", "10.0.0.0/8")
        assert whitelist.is_ip_whitelisted("tenant-b", "192.0.2.1") is True

    def test_inactive_entries_are_ignored(self, whitelist):
        entry = whitelist.create_entry("tenant-a", "10.0.0.0/8")
        whitelist.update_entry(entry.id, "tenant-a", WhitelistEntryPatch(is_active=False))

        # Only inactive rows left, so the tenant is unrestricted again
        assert whitelist.is_ip_whitelisted("tenant-a", "192.0.2.1") is True


class TestEntryMutations:
    def test_create_validates_syntax(self, whitelist, memory_store):
        with pytest.raises(ValidationError):
            whitelist.create_entry("tenant-a", "10.0.0/8")
        assert memory_store.list_whitelist_entries("tenant-a") == []

    def test_create_rejects_non_ascii_digits(self, whitelist, memory_store):
        with pytest.raises(ValidationError):
            whitelist.create_entry("tenant-a", "\u0661\u0660.0.0.0/8")

        assert memory_store.list_whitelist_entries("tenant-a") == []
        assert whitelist.is_ip_whitelisted("tenant-a", "10.1.2.3") is True

    def test_create_sets_fields(self, whitelist, clock):
        entry = whitelist.create_entry("tenant-a", "192.168.0.0/16", "lab", created_by="admin-1")
        assert entry.is_active is True
        assert entry.description == "lab"
        assert entry.created_by == "admin-1"
        assert entry.created_at == clock.now
        assert [e.id for e in whitelist.list_entries("tenant-a")] == [entry.id]

    def test_update_patch(self, whitelist):
        entry = whitelist.create_entry("tenant-a", "10.0.0.1", "vpn")
        updated = whitelist.update_entry(
            entry.id, "tenant-a", WhitelistEntryPatch(ip_address="10.0.0.0/24")
        )
        assert updated.ip_address == "10.0.0.0/24"
        assert updated.description == "vpn"

        cleared = whitelist.update_entry(entry.id, "tenant-a", WhitelistEntryPatch(description=None))
        assert cleared.description is None
        assert cleared.ip_address == "10.0.0.0/24"

    def test_update_rejects_bad_input(self, whitelist):
        entry = whitelist.create_entry("tenant-a", "10.0.0.1")
        with pytest.raises(ValidationError, match="No updates provided"):
            whitelist.update_entry(entry.id, "tenant-a", WhitelistEntryPatch())
        with pytest.raises(ValidationError):
            whitelist.update_entry(entry.id, "tenant-a", WhitelistEntryPatch(ip_address="nope"))

    def test_other_tenant_cannot_touch_entry(self, whitelist):
        entry = whitelist.create_entry("tenant-a", "10.0.0.1")

        with pytest.raises(NotFoundError, match=ENTRY_NOT_FOUND):
            whitelist.update_entry(entry.id, "tenant-b", WhitelistEntryPatch(is_active=False))
        with pytest.raises(NotFoundError):
            whitelist.delete_entry(entry.id, "tenant-b")
        assert whitelist.list_entries("tenant-a")[0].is_active is True

    def test_delete(self, whitelist):
        entry = whitelist.create_entry("tenant-a", "10.0.0.1")
        whitelist.delete_entry(entry.id, "tenant-a")
        assert whitelist.list_entries("tenant-a") == []
        with pytest.raises(NotFoundError):
            whitelist.delete_entry(entry.id, "tenant-a")


class TestWhitelistCache:
    def test_cache_hit_skips_store(self, memory_store, clock):
        cache = DictCache()
        service = WhitelistService(memory_store, cache=cache, now_fn=clock)
        service.create_entry("tenant-a", "10.0.0.0/8")

        assert service.is_ip_whitelisted("tenant-a", "10.1.1.1") is True
        assert "tenant-a" in cache.entries

        # Write behind the service's back; the cached list is still served
        memory_store.whitelist.clear()
        assert service.is_ip_whitelisted("tenant-a", "192.0.2.1") is False

    def test_mutations_invalidate(self, memory_store, clock):
        cache = DictCache()
        service = WhitelistService(memory_store, cache=cache, now_fn=clock)
        entry = service.create_entry("tenant-a", "10.0.0.0/8")
        service.is_ip_whitelisted("tenant-a", "10.1.1.1")

        service.update_entry(entry.id, "tenant-a", WhitelistEntryPatch(ip_address="172.16.0.0/12"))
        assert "tenant-a" not in cache.entries
        assert service.is_ip_whitelisted("tenant-a", "10.1.1.1") is False
        assert service.is_ip_whitelisted("tenant-a", "172.16.1.1") is True

        service.delete_entry(entry.id, "tenant-a")
        assert cache.invalidated.count("tenant-a") == 3
        assert service.is_ip_whitelisted("tenant-a", "10.1.1.1") is True

    def test_empty_list_is_cached(self, memory_store):
        cache = DictCache()
        service = WhitelistService(memory_store, cache=cache)
        service.is_ip_whitelisted("tenant-a", "10.1.1.1")
        assert cache.entries["tenant-a"] == []

    def test_cache_failures_fall_through_to_store(self, memory_store):
        cache = DictCache(fail=True)
        service = WhitelistService(memory_store, cache=cache)
        service.create_entry("tenant-a", "10.0.0.0/8")

        assert service.is_ip_whitelisted("tenant-a", "10.1.1.1") is True
        assert service.is_ip_whitelisted("tenant-a", "192.0.2.1") is False
