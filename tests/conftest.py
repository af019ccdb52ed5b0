import asyncio
import inspect
import os
import re
import secrets
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before profileauth.config / runtime are imported
_test_tmp_dir = tempfile.mkdtemp(prefix="profileauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from profileauth.config import Settings  # noqa: E402
from profileauth.service.auth import AuthService  # noqa: E402
from profileauth.service.notifier import NotifierUnavailable  # noqa: E402
from profileauth.service.oauth import OAuthIdentityLinker  # noqa: E402
from profileauth.service.otp import OTPManager  # noqa: E402
from profileauth.service.sessions import SessionManager  # noqa: E402
from profileauth.service.tokens import SigningKey, TokenIssuer  # noqa: E402
from profileauth.service.two_factor import TwoFactorController  # noqa: E402
from profileauth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class ScriptedRandom:
    """Secure randomness except for digits, which come from a script when one is queued."""

    def __init__(self):
        self.digits: list[int] = []

    def queue_code(self, code: str) -> None:
        self.digits.extend(int(ch) for ch in code)

    def token_bytes(self, nbytes: int) -> bytes:
        return secrets.token_bytes(nbytes)

    def token_hex(self, nbytes: int) -> str:
        return secrets.token_hex(nbytes)

    def randbelow(self, upper: int) -> int:
        if upper == 10 and self.digits:
            return self.digits.pop(0)
        return secrets.randbelow(upper)

    def choice(self, seq):
        return secrets.choice(seq)


class RecordingNotifier:
    """Notifier that keeps every message and can be switched to fail."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, channel, target, payload):
        if self.fail:
            raise NotifierUnavailable(channel, "gateway down")
        self.sent.append((channel, target, payload))

    def last_code(self, target: str | None = None) -> str:
        for _, sent_target, payload in reversed(self.sent):
            if target is None or sent_target == target:
                return re.search(r"code is (\d+)", payload.text).group(1)
        raise AssertionError(f"no code sent to {target}")


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
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        shared_fs_root=str(tmp_path),
        test_mode=True,
        jwt_secret=TEST_SECRET,
        otp_pepper="test-pepper",
        password_min_length=8,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def random_source():
    return ScriptedRandom()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=TEST_SECRET)


@pytest.fixture
def issuer(clock, random_source):
    return TokenIssuer(
        SigningKey("primary", TEST_SECRET),
        clock=clock,
        random_source=random_source,
    )


@pytest.fixture
def session_manager(memory_store, issuer, clock, random_source):
    return SessionManager(
        memory_store,
        issuer,
        refresh_ttl=timedelta(days=30),
        max_lifetime=timedelta(days=90),
        clock=clock,
        random_source=random_source,
    )


@pytest.fixture
def otp_manager(memory_store, notifier, clock, random_source):
    return OTPManager(
        memory_store,
        notifier,
        max_attempts=5,
        pepper="test-pepper",
        clock=clock,
        random_source=random_source,
    )


@pytest.fixture
def two_factor(memory_store, clock, random_source):
    return TwoFactorController(
        memory_store,
        pepper="test-pepper",
        clock=clock,
        random_source=random_source,
    )


@pytest.fixture
def linker(memory_store, session_manager, two_factor, issuer, random_source):
    return OAuthIdentityLinker(
        memory_store,
        session_manager,
        two_factor,
        issuer,
        random_source=random_source,
    )


@pytest.fixture
def auth_service(memory_store, settings, issuer, session_manager, otp_manager, two_factor, linker):
    """Create the facade over the test components."""
    return AuthService(
        memory_store,
        settings,
        issuer=issuer,
        sessions=session_manager,
        otp=otp_manager,
        two_factor=two_factor,
        linker=linker,
    )


@pytest.fixture
def make_user(memory_store):
    """Create users with unique public ids."""
    counter = {"n": 0}

    def _make(email: str = "user@example.com", **kwargs):
        counter["n"] += 1
        return memory_store.create_user(email, public_id=f"T{counter['n']:07d}", **kwargs)

    return _make


@pytest.fixture
def reopen_store(tmp_path):
    """Open a second store over the same state directory."""

    def _reopen(key: str = TEST_SECRET) -> MemoryStore:
        return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=key)

    return _reopen
