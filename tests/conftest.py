import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import httpx  # noqa: E402
import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.config import Settings  # noqa: E402
from authgate.service.runtime import reset_runtime_for_tests  # noqa: E402

ISSUER = "https://accounts.example"
TOKEN_ENDPOINT = "https://accounts.example/token"
USERINFO_URL = "https://accounts.example/userinfo"
TOKENINFO_URL = "https://accounts.example/tokeninfo"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def make_settings():
    """Build Settings with test defaults; keyword overrides win."""

    def _make(**overrides) -> Settings:
        values = {
            "jwt_secret": "Test-Secret-Key_for-Automation-Only-987654321!",
            "oauth_issuer": ISSUER,
            "oauth_userinfo_url": USERINFO_URL,
            "oauth_tokeninfo_url": TOKENINFO_URL,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def fast_hasher():
    """Argon2id with minimal cost so ledger tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


class FakeProvider:
    """Scripted OIDC provider served through httpx.MockTransport."""

    def __init__(self):
        self.discovery = {"issuer": ISSUER, "token_endpoint": TOKEN_ENDPOINT}
        self.discovery_status = 200
        self.token_status = 200
        self.token_body = {"access_token": "tok1", "token_type": "Bearer"}
        self.token_raw = None
        self.userinfo = (404, {"error": "invalid_token"})
        self.tokeninfo = (400, {"error": "invalid_token"})
        self.requests = []

    def paths(self):
        return [request.url.path for request in self.requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        # Yield so concurrent callers interleave
        await asyncio.sleep(0)
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(self.discovery_status, json=self.discovery)
        if path == "/token":
            if self.token_raw is not None:
                return httpx.Response(self.token_status, content=self.token_raw)
            return httpx.Response(self.token_status, json=self.token_body)
        if path == "/userinfo":
            status, body = self.userinfo
            return httpx.Response(status, json=body)
        if path == "/tokeninfo":
            status, body = self.tokeninfo
            return httpx.Response(status, json=body)
        return httpx.Response(404, json={"error": "not_found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_provider():
    return FakeProvider()


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
