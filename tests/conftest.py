import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Seeded before any settings or runtime object is built
_TEST_ENV = {
    "SHARED_FS_ROOT": tempfile.mkdtemp(prefix="taskdeck_test_"),
    "TEST_MODE": "true",
    "USE_MEMORY_STORE": "true",
    "ALLOW_REDIS_FALLBACK_DEV": "true",
    "JWT_SECRET": "taskdeck-suite-signing-secret-0123456789abcdef",
    # empty keeps counters in process
    "REDIS_URL": "",
    # minimal argon2 cost
    "PASSWORD_HASH_TIME_COST": "1",
    "PASSWORD_HASH_MEMORY_COST": "8",
    "PASSWORD_HASH_PARALLELISM": "1",
}
for _key, _value in _TEST_ENV.items():
    os.environ.setdefault(_key, _value)

_REPO_ROOT = str(Path(__file__).resolve().parents[1])
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)

import pytest  # noqa: E402

from taskdeck.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

PASSWORD = "CorrectHorse42"


@pytest.fixture(autouse=True)
def fresh_runtime():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def make_user(runtime):
    """Create an account directly in the store with the given role name."""

    def _make(email="member@example.com", role="user", password=PASSWORD, **changes):
        role_row = runtime.store.get_role_by_name(role)
        user = runtime.store.create_user(
            email=email,
            password_hash=runtime.auth.hasher.hash(password),
            first_name="Test",
            last_name="Member",
            role_id=role_row.id,
        )
        if changes:
            user = runtime.store.update_user(user.id, **changes)
        return user

    return _make


def pytest_pyfunc_call(pyfuncitem):
    """Drive ``async def`` tests with ``asyncio.run``."""
    test_fn = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_fn):
        return None
    wanted = pyfuncitem._fixtureinfo.argnames
    kwargs = {arg: pyfuncitem.funcargs[arg] for arg in wanted if arg in pyfuncitem.funcargs}
    asyncio.run(test_fn(**kwargs))
    return True


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: coroutine test run by asyncio.run")
