import asyncio
import inspect
import os
import sys
from pathlib import Path

# Safe defaults before any import that reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-9876543210")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "google-client-id")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "google-client-secret")
os.environ.setdefault("OAUTH_REDIRECT_URI", "http://localhost:8001/auth/oauth/{provider}/callback")
os.environ.setdefault("OAUTH_FRONTEND_CALLBACK_URL", "http://localhost:3000/auth/callback")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.config import Settings  # noqa: E402
from authgate.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings built from the test environment."""
    return Settings.from_env()


class FakeClock:
    """Manually advanced wall clock for expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


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
