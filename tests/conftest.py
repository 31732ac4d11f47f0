import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-testing-only")
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantguard.config import Settings  # noqa: E402
from tenantguard.service.audit import MemoryAuditSink  # noqa: E402
from tenantguard.service.email import EmailService  # noqa: E402
from tenantguard.service.runtime import Runtime  # noqa: E402
from tenantguard.service.two_factor import generate_totp  # noqa: E402
from tenantguard.storage.memory import MemoryStore  # noqa: E402
from tenantguard.storage.redis_cache import MemoryCache  # noqa: E402

PASSWORD = "Correct-Horse-42!"
TOTP_EPOCH = 1_700_000_010.0


class FakeClock:
    """Monotonic stand-in that tests move forward by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


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


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        encryption_key="test-encryption-key",
        test_mode=True,
        use_memory_store=True,
        redis_url="",
    )


@pytest.fixture
def fast_hasher():
    """Cheap argon2id parameters so hashing does not dominate the suite."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def store():
    return MemoryStore(encryption_key="test-encryption-key")


@pytest.fixture
def cache_clock():
    return FakeClock()


@pytest.fixture
def cache(cache_clock):
    return MemoryCache(clock=cache_clock)


@pytest.fixture
def totp_clock():
    return FakeClock(TOTP_EPOCH)


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def notifier():
    mock = MagicMock(spec=EmailService)
    mock.send_password_reset.return_value = True
    mock.send_two_factor_enabled.return_value = True
    mock.send_verification.return_value = True
    return mock


@pytest.fixture
def runtime(settings, store, cache, notifier, audit_sink, fast_hasher, totp_clock):
    rt = Runtime(
        settings,
        store=store,
        cache=cache,
        notifier=notifier,
        audit_sinks=[audit_sink],
        hasher=fast_hasher,
    )
    rt.two_factor._clock = totp_clock
    return rt


@pytest.fixture
def acme(runtime):
    """Provisioned tenant with an owner and a plain member."""
    provisioned = asyncio.run(
        runtime.provisioning.provision_tenant(
            company_name="Acme Corp",
            slug="acme",
            owner_email="owner@acme.test",
            owner_password=PASSWORD,
        )
    )
    member = asyncio.run(
        runtime.provisioning.create_member(
            provisioned.tenant.id, "member@acme.test", PASSWORD, role="user"
        )
    )
    provisioned.member = member
    return provisioned


@pytest.fixture
def globex(runtime):
    """A second tenant, for cross-tenant checks."""
    return asyncio.run(
        runtime.provisioning.provision_tenant(
            company_name="Globex",
            slug="globex",
            owner_email="owner@globex.test",
            owner_password=PASSWORD,
        )
    )


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def enroll_totp(runtime):
    """Enable TOTP for a user at the current fake time; returns the enrollment."""

    async def _enroll(tenant_id: str, user_id: str, email: str):
        enrollment = runtime.two_factor.generate_secret(email)
        code = generate_totp(enrollment.secret, runtime.two_factor._clock())
        await runtime.two_factor.enable(
            tenant_id, user_id, enrollment.secret, code, enrollment.backup_codes
        )
        return enrollment

    return _enroll


@pytest.fixture
def later():
    """Wall-clock time shifted forward, for patching TokenService._now."""

    def _later(minutes: float = 0, seconds: float = 0) -> datetime:
        return datetime.now(timezone.utc) + timedelta(minutes=minutes, seconds=seconds)

    return _later
