import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from eoty.config import Settings  # noqa: E402
from eoty.service.email import RecordingTransport  # noqa: E402
from eoty.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret="unit-test-secret",
        use_memory_store=True,
        test_mode=True,
        password_hash_time_cost=1,
        password_hash_memory_cost=8192,
    )


@pytest.fixture
def mailbox() -> RecordingTransport:
    """Swap the runtime's mail transport for one that records messages."""
    transport = RecordingTransport()
    get_runtime().email.transport = transport
    return transport


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
