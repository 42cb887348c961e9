from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantguard.logging import get_logger

logger = get_logger(__name__)

_MIN_KEY_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_key(file_name: str) -> str:
    """Read a persisted key from SHARED_FS_ROOT, generating it on first use.

    Keys must survive restarts: the MFA key decrypts stored device secrets and
    the backup-code pepper is needed to recognise codes issued earlier.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantguard"))
    key_path = fs_root / file_name

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("key_dir_setup_failed", error=str(exc), path=str(fs_root))

    if key_path.exists() and not key_path.is_symlink():
        try:
            persisted = key_path.read_text().strip()
            if persisted and len(persisted) >= _MIN_KEY_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("key_read_failed", error=str(exc), path=str(key_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Atomic write: temp file then rename
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{file_name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(key_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("key_persist_failed", error=str(exc), path=str(key_path))
        raise RuntimeError(
            f"Unable to persist {file_name}; set the env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the security and governance gates."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional Redis for the per-tenant IP whitelist cache",
    )
    shared_fs_root: str = env_field("/srv/tenantguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_state: bool = env_field(
        True,
        "PERSIST_MEMORY_STATE",
        description="Write the memory store to SHARED_FS_ROOT/state after each mutation",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI; disables the Redis requirement",
    )
    mfa_issuer: str = env_field("SaaS School Management", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(
        None, "MFA_ENCRYPTION_KEY", validate_default=True
    )
    backup_code_pepper: str | None = env_field(
        None, "BACKUP_CODE_PEPPER", validate_default=True
    )
    whitelist_cache_ttl_seconds: int = env_field(
        300,
        "WHITELIST_CACHE_TTL_SECONDS",
        description="TTL for cached tenant whitelist entries; mutations invalidate eagerly",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("whitelist_cache_ttl_seconds")
    @classmethod
    def _validate_cache_ttl(cls, value: int) -> int:
        if value < 1:
            raise ValueError("whitelist_cache_ttl_seconds must be positive")
        return value

    @field_validator("mfa_encryption_key")
    @classmethod
    def _ensure_mfa_key(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_key(".mfa_encryption_key")

    @field_validator("backup_code_pepper")
    @classmethod
    def _ensure_backup_pepper(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_key(".backup_code_pepper")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
