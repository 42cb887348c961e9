from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from tenantguard.logging import get_logger, log_gate_decision
from tenantguard.service.cidr import ip_matches_cidr, is_valid_ip_pattern
from tenantguard.service.errors import NotFoundError, ValidationError
from tenantguard.storage.models import IpWhitelistEntry, WhitelistEntryPatch, new_id

logger = get_logger(__name__)

ENTRY_NOT_FOUND = "IP whitelist entry not found"


class WhitelistStore(Protocol):
    def create_whitelist_entry(self, entry: IpWhitelistEntry) -> IpWhitelistEntry: ...

    def get_whitelist_entry(self, entry_id: str, tenant_id: str) -> Optional[IpWhitelistEntry]: ...

    def list_whitelist_entries(
        self, tenant_id: str, *, active_only: bool = False
    ) -> List[IpWhitelistEntry]: ...

    def update_whitelist_entry(
        self, entry_id: str, tenant_id: str, changes: dict
    ) -> Optional[IpWhitelistEntry]: ...

    def delete_whitelist_entry(self, entry_id: str, tenant_id: str) -> bool: ...


class WhitelistCacheBackend(Protocol):
    def get_active_entries(self, tenant_id: str) -> Optional[List[IpWhitelistEntry]]: ...

    def set_active_entries(self, tenant_id: str, entries: List[IpWhitelistEntry]) -> None: ...

    def invalidate(self, tenant_id: str) -> None: ...


class WhitelistService:
    """Per-tenant source IP allow-list.

    A tenant with no active entries is unrestricted. Once any entry is active
    only matching addresses pass.
    """

    def __init__(
        self,
        store: WhitelistStore,
        *,
        cache: Optional[WhitelistCacheBackend] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _active_entries(self, tenant_id: str) -> List[IpWhitelistEntry]:
        if self.cache is not None:
            try:
                cached = self.cache.get_active_entries(tenant_id)
            except Exception as exc:
                self.logger.warning("whitelist_cache_read_failed", tenant_id=tenant_id, error=str(exc))
                cached = None
            if cached is not None:
                return cached
        entries = self.store.list_whitelist_entries(tenant_id, active_only=True)
        if self.cache is not None:
            try:
                self.cache.set_active_entries(tenant_id, entries)
            except Exception as exc:
                self.logger.warning("whitelist_cache_write_failed", tenant_id=tenant_id, error=str(exc))
        return entries

    def _invalidate(self, tenant_id: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.invalidate(tenant_id)
        except Exception as exc:
            self.logger.warning("whitelist_cache_invalidate_failed", tenant_id=tenant_id, error=str(exc))

    def is_ip_whitelisted(self, tenant_id: str, ip_address: str) -> bool:
        entries = self._active_entries(tenant_id)
        if not entries:
            # Reduced assurance: an unconfigured tenant is open to every address
            self.logger.debug("ip_whitelist_unconfigured", tenant_id=tenant_id)
            return True
        allowed = any(ip_matches_cidr(ip_address, entry.ip_address) for entry in entries)
        log_gate_decision(
            "ip_whitelist",
            allowed,
            logger=self.logger,
            tenant_id=tenant_id,
            ip_address=ip_address,
            active_entries=len(entries),
        )
        return allowed

    @staticmethod
    def _require_valid_pattern(ip_address: str) -> None:
        if not isinstance(ip_address, str) or not is_valid_ip_pattern(ip_address):
            raise ValidationError("Invalid IP address format", detail={"ip_address": ip_address})

    def create_entry(
        self,
        tenant_id: str,
        ip_address: str,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> IpWhitelistEntry:
        self._require_valid_pattern(ip_address)
        entry = self.store.create_whitelist_entry(
            IpWhitelistEntry(
                id=new_id(),
                tenant_id=tenant_id,
                ip_address=ip_address,
                description=description,
                is_active=True,
                created_by=created_by,
                created_at=self._now_fn(),
            )
        )
        self._invalidate(tenant_id)
        self.logger.info(
            "ip_whitelist_entry_created",
            tenant_id=tenant_id,
            entry_id=entry.id,
            ip_pattern=ip_address,
        )
        return entry

    def list_entries(self, tenant_id: str) -> List[IpWhitelistEntry]:
        return self.store.list_whitelist_entries(tenant_id)

    def update_entry(
        self, entry_id: str, tenant_id: str, patch: WhitelistEntryPatch
    ) -> IpWhitelistEntry:
        if patch.is_empty():
            raise ValidationError("No updates provided")
        changes = patch.changes()
        if "ip_address" in changes:
            self._require_valid_pattern(changes["ip_address"])
        if "is_active" in changes and not isinstance(changes["is_active"], bool):
            raise ValidationError("is_active must be a boolean", detail={"field": "is_active"})
        entry = self.store.update_whitelist_entry(entry_id, tenant_id, changes)
        if not entry:
            raise NotFoundError(ENTRY_NOT_FOUND, detail={"entry_id": entry_id})
        self._invalidate(tenant_id)
        self.logger.info(
            "ip_whitelist_entry_updated",
            tenant_id=tenant_id,
            entry_id=entry_id,
            fields=sorted(changes),
        )
        return entry

    def delete_entry(self, entry_id: str, tenant_id: str) -> None:
        if not self.store.delete_whitelist_entry(entry_id, tenant_id):
            raise NotFoundError(ENTRY_NOT_FOUND, detail={"entry_id": entry_id})
        self._invalidate(tenant_id)
        self.logger.info("ip_whitelist_entry_deleted", tenant_id=tenant_id, entry_id=entry_id)


__all__ = ["ENTRY_NOT_FOUND", "WhitelistCacheBackend", "WhitelistService", "WhitelistStore"]
