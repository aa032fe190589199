import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="consoleauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# In-memory rate limits, lockouts and tickets; Redis paths are covered with mocks
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from consoleauth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Correct-Horse-42!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    monkeypatch.delenv("SECRET_KEY", raising=False)
    monkeypatch.delenv("LOGIN_SECRET_CODE", raising=False)
    reset_runtime_for_tests()
    yield


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def create_admin(runtime):
    """Factory for admin identities with a known password."""

    def _create(
        email: str = ADMIN_EMAIL,
        password: str = ADMIN_PASSWORD,
        *,
        role: str = "admin",
        must_change_password: bool = False,
        is_active: bool = True,
    ):
        user = runtime.store.create_user(
            email,
            role=role,
            must_change_password=must_change_password,
            is_active=is_active,
        )
        pwd_hash, algo = runtime.verifier.hash_password(password)
        runtime.store.save_password(user.id, pwd_hash, algo)
        return user

    return _create


@pytest.fixture
def enable_mfa(runtime):
    """Enroll and confirm TOTP for an identity; returns (secret, backup_codes)."""

    async def _enable(user_id: str):
        enrollment = runtime.mfa.start_enrollment(user_id)
        secret = enrollment["secret"]
        codes = await runtime.mfa.confirm_enrollment(user_id, runtime.totp.generate(secret))
        return secret, codes

    return _enable


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
