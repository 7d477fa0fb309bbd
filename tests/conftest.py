import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Pin configuration before any import that might build settings or the runtime
_test_secret_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SECRET_DIR", _test_secret_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# TestClient talks plain http; Secure cookies would never be sent back
os.environ.setdefault("APP_PROFILE", "local")
os.environ.setdefault("IDP_CLIENT_ID", "test-client")
os.environ.setdefault("IDP_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("IDP_AUTHORIZATION_URL", "https://idp.test/oauth2/authorize")
os.environ.setdefault("IDP_TOKEN_URL", "https://idp.test/oauth2/token")
os.environ.setdefault("IDP_USERINFO_URL", "https://idp.test/oauth2/userInfo")
os.environ.setdefault("IDP_REDIRECT_URI", "http://testserver/login/oauth2/code/cognito")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Settable epoch-seconds clock shared by codec and stores in unit tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

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
