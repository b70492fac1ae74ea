import asyncio
import inspect
import os

# Settings are read on first use; set safe test defaults before importing the app.
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SIGNING_KEY", "test-signing-key-for-the-suite-0123456789abcdef")
os.environ.setdefault("IDENTITY_HASH_KEY", "test-identity-hash-key-for-the-suite-fedcba9876")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from mytgate.config import Settings  # noqa: E402
from mytgate.service.errors import (  # noqa: E402
    AuthError,
    AuthErrorKind,
    UpstreamError,
    UpstreamErrorKind,
)
from mytgate.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from mytgate.service.upstream import TokenGrant  # noqa: E402
from mytgate.storage.memory import MemoryStore  # noqa: E402

SIGNING_KEY = "unit-signing-key-0123456789abcdef0123456789"
IDENTITY_KEY = "unit-identity-key-abcdef0123456789abcdef0123"
GOOD_USER = "driver@example.com"
GOOD_PASSWORD = "correct-horse-battery"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """In-process stand-in for the MyT API.

    ``failures`` is a list of exceptions raised (in order) by the next
    upstream calls before normal behaviour resumes.
    """

    def __init__(self, users=None, *, expires_in: int = 3600) -> None:
        self.users = dict(users or {GOOD_USER: GOOD_PASSWORD})
        self.expires_in = expires_in
        self.failures = []
        self.login_calls = 0
        self.refresh_calls = 0
        self.data_calls = 0
        self.vehicles = {"payload": [{"vin": "JTDKB20U000000001", "nickname": "bZ4X"}]}
        self._issued = 0

    def fail_next(self, *errors) -> None:
        self.failures.extend(errors)

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def _grant(self) -> TokenGrant:
        self._issued += 1
        return TokenGrant(
            access_token=f"upstream-access-{self._issued}",
            refresh_token=f"upstream-refresh-{self._issued}",
            expires_in=self.expires_in,
        )

    async def login(self, credentials):
        self.login_calls += 1
        self._maybe_fail()
        if self.users.get(credentials.username) != credentials.password:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)
        return self._grant()

    async def refresh(self, refresh_token):
        self.refresh_calls += 1
        self._maybe_fail()
        return self._grant()

    async def get_json(self, path, token):
        self.data_calls += 1
        self._maybe_fail()
        return self.vehicles


def transient(status: int = 503) -> UpstreamError:
    return UpstreamError(
        UpstreamErrorKind.TRANSIENT, "upstream down", upstream_status=status
    )


def permanent(status: int = 400) -> UpstreamError:
    return UpstreamError(
        UpstreamErrorKind.PERMANENT, "upstream said no", upstream_status=status
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def settings():
    return Settings(
        signing_key=SIGNING_KEY,
        identity_hash_key=IDENTITY_KEY,
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def runtime(settings, store, upstream, clock):
    return Runtime(settings, store=store, upstream=upstream, clock=clock)


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
