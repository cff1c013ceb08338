import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Only the redis integration tests talk to this; they skip when it is unreachable
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionward.config import Settings  # noqa: E402
from sessionward.service.auth import SessionService  # noqa: E402
from sessionward.service.permissions import StaticPermissionSource  # noqa: E402
from sessionward.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionward.storage.memory import MemoryAccountIndex, MemoryTokenStore  # noqa: E402


class FakeClock:
    """Manually advanced clock shared by the service and the memory store."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryTokenStore(clock=clock.time)


@pytest.fixture
def account_index():
    return MemoryAccountIndex(lock_timeout_seconds=2.0)


@pytest.fixture
def permissions(clock):
    return StaticPermissionSource(clock=clock.time)


@pytest.fixture
def make_service(clock, memory_store, account_index, permissions):
    """Build a SessionService over the shared memory backends with setting overrides."""

    def _make(**overrides) -> SessionService:
        settings = Settings(**overrides)
        return SessionService(
            memory_store,
            account_index,
            settings,
            permissions=permissions,
            clock=clock.now,
        )

    return _make


@pytest.fixture
def service(make_service):
    return make_service()
