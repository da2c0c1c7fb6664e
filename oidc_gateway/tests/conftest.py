"""
Shared fixtures: a stateful fake IdP behind httpx.MockTransport and an
application wired to it.

The fake follows the Keycloak contract closely enough for the gateway:
single-use authorization codes, refresh tokens that rotate (or not),
access tokens that can be expired on demand, introspection, userinfo and
logout.
"""

import asyncio
import itertools
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from oidc_gateway.auth.idp_client import IdpClient
from oidc_gateway.config import Settings
from oidc_gateway.main import create_app

CLIENT_ID = "gateway-client"
CLIENT_SECRET = "super-secret-client-credential-value"
REALM = "test-realm"
IDP_BASE_URL = "http://idp.test"
FRONTEND_URL = "http://frontend.test"

USERS = {
    "alice": {
        "sub": "user-alice",
        "preferred_username": "alice",
        "email": "alice@example.com",
        "name": "Alice Example",
        "realm_access": {"roles": ["user"]},
    },
    "root": {
        "sub": "user-root",
        "preferred_username": "root",
        "email": "root@example.com",
        "name": "Root Admin",
        "realm_access": {"roles": ["user", "admin"]},
    },
    "norole": {
        "sub": "user-norole",
        "preferred_username": "norole",
        "email": "norole@example.com",
        "name": "No Roles",
    },
}


class FakeIdp:
    """In-memory Keycloak stand-in, served through httpx.MockTransport."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.codes: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.access_tokens: Dict[str, str] = {}
        self.calls: Counter = Counter()
        self.requests: List[Tuple[str, Dict[str, str]]] = []
        self.failures: Dict[str, Any] = {}
        self.rotate_refresh_tokens = True
        self.issue_id_token = True
        self.refresh_delay = 0.0
        self.expires_in = 300

    # token issuance

    def _next(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def issue_code(self, username: str = "alice") -> str:
        code = self._next("code")
        self.codes[code] = username
        return code

    def issue_access_token(self, username: str = "alice") -> str:
        token = self._next("at")
        self.access_tokens[token] = username
        return token

    def issue_refresh_token(self, username: str = "alice") -> str:
        token = self._next("rt")
        self.refresh_tokens[token] = username
        return token

    def expire_access_token(self, token: str) -> None:
        self.access_tokens.pop(token, None)

    def _token_response(self, username: str, refresh_token: Optional[str]) -> Dict[str, Any]:
        body = {
            "access_token": self.issue_access_token(username),
            "expires_in": self.expires_in,
            "refresh_expires_in": 1800,
            "token_type": "Bearer",
            "scope": "openid profile email",
        }
        if refresh_token:
            body["refresh_token"] = refresh_token
        if self.issue_id_token:
            body["id_token"] = self._next("idt")
        return body

    # transport

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        form = dict(parse_qsl(request.content.decode())) if request.method == "POST" else {}

        if path.endswith("/token/introspect"):
            operation = "introspect"
        elif path.endswith("/token"):
            operation = "refresh" if form.get("grant_type") == "refresh_token" else "exchange"
        elif path.endswith("/userinfo"):
            operation = "userinfo"
        elif path.endswith("/logout"):
            operation = "revoke"
        else:
            return httpx.Response(404, json={"error": "not_found"})

        self.calls[operation] += 1
        self.requests.append((operation, form))

        failure = self.failures.get(operation)
        if failure == "network":
            raise httpx.ConnectError("connection refused", request=request)
        if failure == "slow":
            await asyncio.sleep(5)
        if failure == "undecodable":
            # body claims gzip but is not; httpx raises DecodingError on read
            return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not-gzip")
        if isinstance(failure, int):
            return httpx.Response(failure, json={"error": "server_error", "error_description": "IdP failure"})

        if operation != "userinfo" and (
            form.get("client_id") != CLIENT_ID or form.get("client_secret") != CLIENT_SECRET
        ):
            return httpx.Response(401, json={"error": "unauthorized_client"})

        return await getattr(self, f"_{operation}")(request, form)

    async def _exchange(self, request, form):
        username = self.codes.pop(form.get("code"), None)
        if username is None:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Code not valid"})
        return httpx.Response(200, json=self._token_response(username, self.issue_refresh_token(username)))

    async def _refresh(self, request, form):
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        old = form.get("refresh_token")
        username = self.refresh_tokens.get(old)
        if username is None:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token is not active"})
        if self.rotate_refresh_tokens:
            del self.refresh_tokens[old]
            return httpx.Response(200, json=self._token_response(username, self.issue_refresh_token(username)))
        return httpx.Response(200, json=self._token_response(username, None))

    async def _introspect(self, request, form):
        username = self.access_tokens.get(form.get("token"))
        if username is None:
            return httpx.Response(200, json={"active": False})
        return httpx.Response(200, json={"active": True, "client_id": CLIENT_ID, **USERS[username]})

    async def _userinfo(self, request, form):
        auth = request.headers.get("Authorization", "")
        username = self.access_tokens.get(auth[len("Bearer "):]) if auth.startswith("Bearer ") else None
        if username is None:
            return httpx.Response(401, json={"error": "invalid_token"})
        claims = {k: v for k, v in USERS[username].items() if k != "realm_access"}
        return httpx.Response(200, json=claims)

    async def _revoke(self, request, form):
        if self.refresh_tokens.pop(form.get("refresh_token"), None) is None:
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(204)


# ============================================================================
# Fixtures
# ============================================================================

def make_settings(**overrides) -> Settings:
    values = dict(
        IDP_BASE_URL=IDP_BASE_URL,
        IDP_REALM=REALM,
        IDP_CLIENT_ID=CLIENT_ID,
        IDP_CLIENT_SECRET=CLIENT_SECRET,
        IDP_TIMEOUT_SECONDS=0.5,
        IDP_READ_RETRIES=1,
        PUBLIC_BASE_URL="http://testserver",
        FRONTEND_URL=FRONTEND_URL,
        ENVIRONMENT="test",
        SESSION_COOKIE_SECRET="test-cookie-secret-0123456789abcdef",
        ALLOWED_ORIGINS=FRONTEND_URL,
        LOG_LEVEL="INFO",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def fake_idp():
    return FakeIdp()


@pytest.fixture
def idp_client(settings, fake_idp):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_idp.handler))
    return IdpClient(settings, http_client=http_client)


@pytest.fixture
def app(settings, idp_client):
    return create_app(settings=settings, idp_client=idp_client)


@pytest.fixture
def client(app):
    return TestClient(app, follow_redirects=False)


def query_of(location: str) -> Dict[str, List[str]]:
    return parse_qs(urlparse(location).query)


@pytest.fixture
def login_as(client, fake_idp):
    """Run /auth/login then /auth/callback; returns the success redirect's query."""

    def _login(username: str = "alice") -> Dict[str, str]:
        response = client.get("/auth/login")
        assert response.status_code == 302
        state = query_of(response.headers["location"])["state"][0]

        code = fake_idp.issue_code(username)
        response = client.get("/auth/callback", params={"code": code, "state": state})
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(f"{FRONTEND_URL}/auth/success?")
        return {k: v[0] for k, v in query_of(location).items()}

    return _login
