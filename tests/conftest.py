import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set test configuration before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# No Redis in unit tests; the runtime falls back to the in-process counter store
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("ADMIN_IDENTITIES", "admin@portal.example")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from clientportal.service.runtime import reset_runtime_for_tests  # noqa: E402
from clientportal.storage.errors import StoreUnavailable  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock injected into services under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class UnavailableCounterStore:
    """Counter store whose every call fails as if the backend were down."""

    def __init__(self):
        self.calls = []

    async def _fail(self, operation: str):
        self.calls.append(operation)
        raise StoreUnavailable(operation, ConnectionError("connection refused"))

    async def increment(self, key, window_seconds):
        await self._fail("increment")

    async def get(self, key):
        await self._fail("get")

    async def set(self, key, value, ttl_seconds, *, only_if_present=False):
        await self._fail("set")

    async def delete(self, key):
        await self._fail("delete")

    async def add_member(self, key, member, ttl_seconds):
        await self._fail("add_member")

    async def members(self, key):
        await self._fail("members")

    async def remove_member(self, key, member):
        await self._fail("remove_member")

    async def ping(self):
        await self._fail("ping")

    async def close(self):
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def unavailable_store():
    return UnavailableCounterStore()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
