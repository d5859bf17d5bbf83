import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports clinicgate.app
_test_tmp_dir = tempfile.mkdtemp(prefix="clinicgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Lockout and rate limits fall back to the per-process maps so runs are deterministic
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from clinicgate.config import Settings  # noqa: E402
from clinicgate.service.audit import AuditTrail  # noqa: E402
from clinicgate.service.guard import AuthorizationGuard  # noqa: E402
from clinicgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from clinicgate.service.tokens import TokenIssuer  # noqa: E402
from clinicgate.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-secret-that-is-long-enough-for-hs256-signing"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so the JSON snapshot never leaks between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        shared_fs_root=str(tmp_path),
    )


@pytest.fixture
def store():
    return MemoryStore(persist=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit(store, settings):
    return AuditTrail(store, settings)


@pytest.fixture
def issuer(store, audit, settings, clock):
    return TokenIssuer(store, audit, settings, clock=clock)


@pytest.fixture
def guard(issuer, audit):
    return AuthorizationGuard(issuer, audit)


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
