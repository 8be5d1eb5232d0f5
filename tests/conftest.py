import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Deterministic secrets before anything reads settings
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use-0001")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-0002")
os.environ.setdefault("JWT_RESET_SECRET", "test-reset-secret-for-testing-only-do-not-use-0003")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from turnstile.config import Settings, reset_settings_cache  # noqa: E402
from turnstile.service.runtime import Runtime  # noqa: E402
from turnstile.storage.memory import MemoryRecordStore, MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced clock shared by every component of a test runtime."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingDelivery:
    """Captures delivered codes instead of sending them."""

    def __init__(self) -> None:
        self.sent = []
        self.succeed = True

    def deliver_code(self, destination, purpose, code):
        self.sent.append((destination, purpose, code))
        return self.succeed

    def last_code(self, destination=None, purpose=None):
        for sent_to, sent_purpose, code in reversed(self.sent):
            if destination is not None and sent_to != destination:
                continue
            if purpose is not None and sent_purpose != purpose:
                continue
            return code
        return None


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret=os.environ["JWT_ACCESS_SECRET"],
        jwt_refresh_secret=os.environ["JWT_REFRESH_SECRET"],
        jwt_reset_secret=os.environ["JWT_RESET_SECRET"],
        test_mode=True,
        expose_codes_in_responses=True,
        cookie_secure=False,
    )


@pytest.fixture
def directory():
    return MemoryStore()


@pytest.fixture
def records():
    return MemoryRecordStore()


@pytest.fixture
def runtime(settings, directory, delivery, records, clock):
    return Runtime(settings, directory=directory, delivery=delivery, records=records, clock=clock)


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
