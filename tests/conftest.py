import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Per-process fallbacks keep rate-limit and lockout state from leaking between tests
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-do-not-use")
# TestClient talks plain http, so Secure cookies would never be sent back
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("EXPOSE_DEMO_OTP", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from recipeshare.logging import clear_security_events  # noqa: E402
from recipeshare.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Settable time source shared by every component under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    clear_security_events()
    yield
    reset_runtime_for_tests()
    clear_security_events()


@pytest.fixture
def clock():
    return FakeClock()


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
