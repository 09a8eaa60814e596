import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Settings are read lazily, but pin the environment before pivotauth is imported.
# REDIS_URL stays unset so the MFA throttle keeps its in-process counter.
for _name, _value in {
    "STATE_ROOT": tempfile.mkdtemp(prefix="pivotauth_test_"),
    "TEST_MODE": "true",
    "USE_MEMORY_STORE": "true",
    "JWT_SECRET": "suite-only-jwt-secret-0123456789abcdefghijklmnop",
}.items():
    os.environ.setdefault(_name, _value)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from pivotauth.config import Settings  # noqa: E402
from pivotauth.service.auth import AuthService  # noqa: E402
from pivotauth.service.passwords import PasswordHasher  # noqa: E402
from pivotauth.service.totp import TotpVerifier  # noqa: E402
from pivotauth.storage.memory import MemoryStore  # noqa: E402

PASSWORD = "correct horse battery"
IDENTIFIER = "alice@example.com"
T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


def wrong_totp(secret, when):
    """A well-formed code that is not accepted at ``when``."""
    valid = {TotpVerifier.code_at(secret, when + timedelta(seconds=30 * step)) for step in (-1, 0, 1)}
    return next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        mfa_encryption_key="mfa-key-for-tests",
    )


@pytest.fixture(scope="session")
def fast_hasher():
    """argon2id with minimal cost so suites stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def memory_store():
    return MemoryStore(mfa_encryption_key="mfa-key-for-tests")


@pytest.fixture
def auth_service(memory_store, settings, fast_hasher):
    return AuthService(memory_store, settings, role="member", hasher=fast_hasher)


@pytest.fixture
def account(auth_service):
    return auth_service.register(IDENTIFIER, PASSWORD, meta={"display_name": "Alice"})


def pytest_pyfunc_call(pyfuncitem):
    """Run ``async def`` tests to completion on a fresh event loop."""
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None
    argnames = pyfuncitem._fixtureinfo.argnames
    kwargs = {name: pyfuncitem.funcargs[name] for name in argnames if name in pyfuncitem.funcargs}
    asyncio.run(pyfuncitem.obj(**kwargs))
    return True
