import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("AUTH_MODE", "mock")
os.environ.setdefault("API_URL", "http://identity.test/")
os.environ.setdefault("APP_URL", "http://testserver")
# Lockout counters stay in the memory store unless a test opts into Redis
os.environ.pop("REDIS_URL", None)

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantgate.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime_for(monkeypatch):
    """Rebuild the runtime in ``mode``, optionally routing upstream calls through ``handler``."""

    def _build(mode, handler=None):
        monkeypatch.setenv("AUTH_MODE", mode)
        runtime = reset_runtime_for_tests()
        if handler is not None:
            runtime.use_transport(httpx.MockTransport(handler))
        return runtime

    return _build


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
