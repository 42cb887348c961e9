from __future__ import annotations

import json
from typing import List, Optional

from redis import Redis

from tenantguard.storage.common import record_from_row, record_to_dict
from tenantguard.storage.models import IpWhitelistEntry


class WhitelistCache:
    """Redis cache of each tenant's active whitelist entries.

    Entries are stored as one JSON list per tenant. Every mutation in the
    whitelist service calls ``invalidate`` so a stale list lives at most until
    the next write, or ``ttl_seconds`` if another node wrote.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        ttl_seconds: int = 300,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(tenant_id: str) -> str:
        return f"whitelist:active:{tenant_id}"

    def verify_connection(self) -> None:
        self.client.ping()

    def get_active_entries(self, tenant_id: str) -> Optional[List[IpWhitelistEntry]]:
        """Return the cached list, or None on a miss (an empty list is a hit)."""
        raw = self.client.get(self._key(tenant_id))
        if raw is None:
            return None
        return [record_from_row(IpWhitelistEntry, row) for row in json.loads(raw)]

    def set_active_entries(self, tenant_id: str, entries: List[IpWhitelistEntry]) -> None:
        payload = json.dumps([record_to_dict(entry) for entry in entries])
        self.client.set(self._key(tenant_id), payload, ex=self.ttl_seconds)

    def invalidate(self, tenant_id: str) -> None:
        self.client.delete(self._key(tenant_id))

    def close(self) -> None:
        self.client.close()
