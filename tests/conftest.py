import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from otpgate.config import EnvironmentIndicator, FixedEnvironment, Settings  # noqa: E402
from otpgate.service.challenges import ChallengeService  # noqa: E402
from otpgate.service.email import DeliveryResult  # noqa: E402
from otpgate.service.rate_limit import RateLimiter  # noqa: E402
from otpgate.service.refresh import RefreshTokenService  # noqa: E402
from otpgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from otpgate.service.session import SessionService  # noqa: E402
from otpgate.service.suspension import SuspensionTracker  # noqa: E402
from otpgate.service.tokens import TokenIssuer  # noqa: E402
from otpgate.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingEmailSender:
    """Email capability that records codes instead of sending them."""

    def __init__(self, *, fail: bool = False, hang: bool = False, error: Exception | None = None):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail
        self.hang = hang
        self.error = error

    @property
    def last_code(self) -> Optional[str]:
        return self.sent[-1][1] if self.sent else None

    async def send_otp(self, identity: str, code: str) -> DeliveryResult:
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        self.sent.append((identity, code))
        if self.fail:
            return DeliveryResult(False, "smtp unavailable")
        return DeliveryResult(True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def environment():
    return FixedEnvironment("test")


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def make_session_service(store, clock, email_sender):
    """Factory building a fully wired SessionService over one MemoryStore."""

    def _make(
        settings: Optional[Settings] = None,
        environment: Optional[EnvironmentIndicator] = None,
        email=None,
    ) -> SessionService:
        settings = settings or Settings(jwt_secret=TEST_SECRET)
        environment = environment or FixedEnvironment("test")
        return SessionService(
            settings=settings,
            challenges=ChallengeService(store, settings, clock=clock),
            rate_limiter=RateLimiter(store, settings, environment=environment, clock=clock),
            suspensions=SuspensionTracker(store, settings, clock=clock),
            tokens=TokenIssuer(settings, environment=environment, clock=clock),
            refresh_tokens=RefreshTokenService(store, settings, clock=clock),
            email=email or email_sender,
            environment=environment,
            clock=clock,
        )

    return _make


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
