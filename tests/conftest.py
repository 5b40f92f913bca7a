import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before any import that builds settings
_test_tmp_dir = tempfile.mkdtemp(prefix="loanease_test_")
os.environ.setdefault("SECRET_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Rate limits and lockouts run in process memory unless a test opts in to Redis
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from loanease.config import get_settings  # noqa: E402
from loanease.service.audit import MemoryAuditSink  # noqa: E402
from loanease.service.clock import FrozenClock  # noqa: E402
from loanease.service.notifier import DeliveryResult  # noqa: E402
from loanease.service.passwords import hash_password  # noqa: E402
from loanease.service.runtime import reset_runtime_for_tests  # noqa: E402
from loanease.service.tokens import TokenCodec  # noqa: E402
from loanease.storage.memory import MemoryStore  # noqa: E402


class RecordingNotifier:
    """Notifier double that keeps every message instead of sending it."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.codes = []
        self.resets = []
        self.invitations = []
        self.verifications = []

    def _result(self) -> DeliveryResult:
        if self.fail:
            return DeliveryResult(success=False, error="smtp down")
        return DeliveryResult(success=True, message_id="test")

    def send_code(self, email, code, display_name=None):
        self.codes.append((email, code))
        return self._result()

    def send_password_reset(self, email, token, display_name=None):
        self.resets.append((email, token))
        return self._result()

    def send_email_verification(self, email, token, display_name=None):
        self.verifications.append((email, token))
        return self._result()

    def send_invitation(self, email, token, *, organisation_id, expires_at, inviter_name=None):
        self.invitations.append((email, token))
        return self._result()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def active_user(store):
    return store.create_user(
        "borrower.broker@example.com",
        role="referrer_admin",
        organisation_id="org-1",
        password_hash=hash_password("correct horse battery"),
        first_name="Sam",
        surname="Lee",
    )


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
