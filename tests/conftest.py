import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PERSIST_MEMORY_STATE", "false")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("BACKUP_CODE_PEPPER", "test-pepper-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantguard.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Mutable clock handed to services as ``now_fn``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_store(tmp_path):
    """Non-persisting store isolated per test."""
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key", persist=False)
