import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Environment must be in place before anything imports tripauth.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only")
# Memory backends keep the injected ManualClock authoritative for TTLs;
# Redis backends have their own suite in test_redis_backends.py
os.environ["REDIS_URL"] = ""
# Per-IP limiter would otherwise trip across tests sharing the TestClient host
os.environ.setdefault("AUTH_RATE_LIMIT", "1000")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tripauth.service.clock import ManualClock  # noqa: E402
from tripauth.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def runtime(clock):
    """Runtime rebuilt around a ManualClock so expiry windows can be simulated."""
    return reset_runtime_for_tests(clock=clock)


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
