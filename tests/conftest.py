import asyncio
import inspect
import os
import sys
from pathlib import Path

# Keep test runs independent of a developer's local .env and shell
os.environ.setdefault("LOG_JSON", "true")
for _name in (
    "STEPFLOW_MAX_CONCURRENCY",
    "STEPFLOW_STEP_TIMEOUT_SECONDS",
    "STEPFLOW_WORKFLOW_TIMEOUT_MS",
    "STEPFLOW_MAX_LOOP_ITERATIONS",
    "STEPFLOW_BLOCKED_DOMAINS",
    "TOOL_NETWORK_ALLOWLIST",
):
    os.environ.pop(_name, None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from stepflow.config import reset_settings_cache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
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
