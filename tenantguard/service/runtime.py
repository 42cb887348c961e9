from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tenantguard.config import get_settings, reset_settings_cache
from tenantguard.logging import get_logger
from tenantguard.service.lockout import LockoutService
from tenantguard.service.mfa import MfaService
from tenantguard.service.password_policy import PasswordPolicyService
from tenantguard.service.quota import QuotaService
from tenantguard.service.whitelist import WhitelistService
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.postgres import PostgresStore
from tenantguard.storage.redis_cache import WhitelistCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, cache and gate services for the process."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                    persist=self.settings.persist_memory_state,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[WhitelistCache] = None
        if self.settings.redis_url:
            try:
                cache = WhitelistCache(
                    self.settings.redis_url,
                    ttl_seconds=self.settings.whitelist_cache_ttl_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                # The cache is an optimisation; the store stays authoritative
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.password_policies = PasswordPolicyService(self.store)
        self.lockout = LockoutService(self.store, self.password_policies)
        self.mfa = MfaService(
            self.store,
            backup_code_pepper=self.settings.backup_code_pepper,
            issuer=self.settings.mfa_issuer,
        )
        self.whitelist = WhitelistService(self.store, cache=self.cache)
        self.quota = QuotaService(self.store)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            mfa_issuer=self.settings.mfa_issuer,
        )

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")

        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.debug("runtime_close_failed", error=str(exc))
        runtime = Runtime()
        return runtime
