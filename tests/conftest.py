import asyncio
import inspect
import json
import os
import sys
from pathlib import Path

# Pin test configuration before any imports that might read settings
os.environ["CREDENTIAL_STORE"] = "memory"
os.environ["CERBERUS_API_BASE_URL"] = "http://identity.test"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from cerberus_auth.config import Settings  # noqa: E402
from cerberus_auth.service.identity import IdentityClient  # noqa: E402
from cerberus_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from cerberus_auth.service.session import SessionManager  # noqa: E402
from cerberus_auth.storage.memory import MemoryCredentialStore  # noqa: E402

ANALYST = {
    "id": 7,
    "username": "asmith",
    "email": "asmith@example.com",
    "full_name": "Alice Smith",
    "role": "analyst",
    "department": "SOC",
    "is_active": True,
}


class FakeIdentityServer:
    """In-process stand-in for the identity service behind httpx.MockTransport.

    Issues numbered token pairs, remembers which ones are live, and lets tests
    queue canned failures per endpoint.
    """

    def __init__(self, users=None, passwords=None):
        self.users = users or {"asmith": dict(ANALYST)}
        self.passwords = passwords or {"asmith": "correct-horse"}
        self.counter = 0
        self.access_tokens = {}
        self.refresh_tokens = {}
        self.requests = []
        self.failures = {}
        self.refresh_gate = None
        self.login_gate = None

    # -- test controls --
    def fail_next(self, path, status=500, body=None, exc=None, headers=None):
        self.failures.setdefault(path, []).append((status, body, exc, headers))

    def issue(self, username):
        self.counter += 1
        access = f"access-{self.counter}"
        refresh = f"refresh-{self.counter}"
        self.access_tokens[access] = username
        self.refresh_tokens[refresh] = username
        return access, refresh

    def expire_access(self, token):
        self.access_tokens.pop(token, None)

    def count(self, path):
        return sum(1 for method, p in self.requests if p.endswith(path))

    def transport(self):
        return httpx.MockTransport(self.handler)

    # -- request handling --
    async def handler(self, request):
        path = request.url.path
        self.requests.append((request.method, path))
        if path.endswith("/auth/refresh") and self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if path.endswith("/auth/login") and self.login_gate is not None:
            await self.login_gate.wait()
        for suffix, queued in self.failures.items():
            if path.endswith(suffix) and queued:
                status, body, exc, headers = queued.pop(0)
                if exc is not None:
                    raise exc
                if isinstance(body, (dict, list)):
                    return httpx.Response(status, json=body, headers=headers)
                return httpx.Response(status, content=(body or b""), headers=headers)

        payload = json.loads(request.content) if request.content else {}
        bearer = request.headers.get("authorization", "").removeprefix("Bearer ")

        if path.endswith("/auth/login"):
            username = payload.get("username")
            if self.passwords.get(username) != payload.get("password"):
                return httpx.Response(401, json={"detail": "Invalid credentials"})
            return self._grant(username)
        if path.endswith("/auth/refresh"):
            username = self.refresh_tokens.pop(payload.get("refresh_token"), None)
            if username is None:
                return httpx.Response(401, json={"detail": "Invalid refresh token"})
            return self._grant(username)
        if path.endswith("/auth/me"):
            username = self.access_tokens.get(bearer)
            if username is None:
                return httpx.Response(401, json={"detail": "Could not validate credentials"})
            return httpx.Response(200, json=self.users[username])
        if path.endswith("/auth/logout") or path.endswith("/auth/logout-all"):
            username = self.access_tokens.pop(bearer, None)
            if username is None:
                return httpx.Response(401, json={"detail": "Not authenticated"})
            if path.endswith("/auth/logout-all"):
                for token, owner in list(self.refresh_tokens.items()):
                    if owner == username:
                        del self.refresh_tokens[token]
            return httpx.Response(200, json={"message": "Logged out"})
        if path.endswith("/auth/change-password"):
            username = self.access_tokens.get(bearer)
            if username is None:
                return httpx.Response(401, json={"detail": "Not authenticated"})
            if self.passwords.get(username) != payload.get("current_password"):
                return httpx.Response(401, json={"detail": "Current password is incorrect"})
            self.passwords[username] = payload.get("new_password")
            return httpx.Response(200, json={"message": "Password changed"})
        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if path.endswith("/incidents"):
            if bearer not in self.access_tokens:
                return httpx.Response(401, json={"detail": "Token expired"})
            return httpx.Response(200, json=[{"id": 1, "title": "Phishing"}])
        return httpx.Response(404, json={"detail": "Not Found"})

    def _grant(self, username):
        access, refresh = self.issue(username)
        return httpx.Response(
            200,
            json={
                "access_token": access,
                "refresh_token": refresh,
                "token_type": "bearer",
                "expires_in": 1800,
                "user_info": self.users[username],
            },
        )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(api_base_url="http://identity.test", refresh_interval_seconds=3600)


@pytest.fixture
def server():
    return FakeIdentityServer()


@pytest.fixture
def identity(settings, server):
    return IdentityClient(settings, transport=server.transport())


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def manager(store, identity, settings):
    return SessionManager(store, identity, settings)


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
