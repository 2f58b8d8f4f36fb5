import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

os.environ.setdefault("AUTH_PEPPER", "test-pepper-for-automation-only-0123456789")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authkernel.config import Settings, reset_settings_cache  # noqa: E402
from authkernel.service.runtime import Runtime, set_runtime  # noqa: E402
from authkernel.storage.memory import MemoryCache, MemoryStore  # noqa: E402

TEST_PEPPER = "test-pepper-for-automation-only-0123456789"


class FakeClock:
    """Manually advanced clock shared by caches, limiters and sessions."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def time(self) -> float:
        return self.now

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = {
        "pepper": TEST_PEPPER,
        "use_memory_store": True,
        "cookie_secure": False,
        # Cheap argon2 parameters keep the suite fast
        "argon2_memory_cost": 1024,
        "argon2_time_cost": 1,
        "argon2_parallelism": 1,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    return MemoryCache(clock=clock.time)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def runtime(settings, memory_cache, memory_store):
    rt = Runtime(settings, cache=memory_cache, store=memory_store)
    set_runtime(rt)
    return rt


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_settings_cache()
    set_runtime(None)
    yield
    set_runtime(None)
    reset_settings_cache()


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
