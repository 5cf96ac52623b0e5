import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="latchkey_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from latchkey.config import Settings, reset_settings_cache  # noqa: E402
from latchkey.service.runtime import Runtime  # noqa: E402
from latchkey.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Str0ng!Passw0rd"
OTHER_PASSWORD = "An0ther!Secret"


class ManualClock:
    """Clock the tests move by hand; starts at the real current time."""

    def __init__(self, start=None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingMailer:
    """Mailer double that remembers what it was asked to send."""

    def __init__(self):
        self.sent = []
        self.fail = False
        self.error = None

    def send(self, kind, to_email, link, expiry_description):
        if self.error is not None:
            raise self.error
        self.sent.append(
            {
                "kind": kind,
                "to": to_email,
                "link": link,
                "expiry": expiry_description,
            }
        )
        return not self.fail

    def last_token(self):
        return self.sent[-1]["link"].rsplit("/", 1)[-1]


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    """Settings with a cheap argon2 work factor so the suite stays fast."""
    return Settings(
        session_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        app_base_url="https://app.example.test",
        password_time_cost=1,
        password_memory_cost_kib=1024,
        password_parallelism=1,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def runtime(settings, memory_store, mailer, clock):
    return Runtime(settings, store=memory_store, mailer=mailer, clock=clock)


@pytest.fixture
def auth_service(runtime):
    return runtime.auth


@pytest.fixture
def active_account(runtime, mailer):
    """A registered and activated account with a local password."""
    runtime.auth.register("Alice", "alice@example.com", STRONG_PASSWORD, STRONG_PASSWORD)
    result = runtime.auth.activate(mailer.last_token())
    return result.account
