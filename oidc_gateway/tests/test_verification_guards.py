"""
Tests for Access Verification and Role Guards
=============================================

Tests for oidc_gateway/auth/verification.py and oidc_gateway/auth/guards.py,
exercised through the /api routes and a small standalone app.

Test Coverage:
--------------
1. Bearer header parsing (no IdP call on a missing/garbled header)
2. Active, inactive and unverifiable tokens
3. Single role and any-of role guards, with 403 details
4. Guards fail closed without verification in front of them
5. Public endpoints, the 404 shape and the generic 500
"""

import pytest
from fastapi import Depends, FastAPI, status
from fastapi.testclient import TestClient

from oidc_gateway.auth.errors import AuthError, MissingTokenError
from oidc_gateway.auth.guards import require_any_role, require_role
from oidc_gateway.auth.verification import extract_bearer_token
from oidc_gateway.main import create_app
from oidc_gateway.models import Identity

from conftest import make_settings


def bearer(token: str):
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# Header Parsing
# ============================================================================

class TestExtractBearerToken:
    def test_valid_header(self):
        assert extract_bearer_token("Bearer abc.def") == "abc.def"

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer_token("bearer abc") == "abc"

    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer", "Basic abc", "Bearer a b", "abc"],
    )
    def test_unusable_headers(self, header):
        with pytest.raises(MissingTokenError):
            extract_bearer_token(header)


# ============================================================================
# Verification
# ============================================================================

class TestVerification:
    def test_missing_header(self, client, fake_idp):
        response = client.get("/api/protected")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "MissingToken"
        assert response.headers["www-authenticate"] == "Bearer"
        assert fake_idp.calls["introspect"] == 0

    def test_wrong_scheme(self, client, fake_idp):
        response = client.get("/api/protected", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert response.json()["error"] == "MissingToken"
        assert fake_idp.calls["introspect"] == 0

    def test_active_token(self, client, fake_idp):
        token = fake_idp.issue_access_token("alice")
        response = client.get("/api/protected", headers=bearer(token))

        assert response.status_code == status.HTTP_200_OK
        user = response.json()["user"]
        assert user["subject"] == "user-alice"
        assert user["username"] == "alice"
        assert user["roles"] == ["user"]
        assert fake_idp.calls["introspect"] == 1

    def test_inactive_token(self, client):
        response = client.get("/api/protected", headers=bearer("at-unknown"))

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "InvalidOrExpiredToken"

    @pytest.mark.parametrize("failure", [500, "network", "slow", "undecodable"])
    def test_idp_unavailable(self, client, fake_idp, failure):
        token = fake_idp.issue_access_token("alice")
        fake_idp.failures["introspect"] = failure

        response = client.get("/api/protected", headers=bearer(token))

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        body = response.json()
        assert body["error"] == "VerificationUnavailable"
        assert body["message"] == "Token could not be verified"

    def test_gateway_credentials_rejected(self, client, fake_idp, settings):
        token = fake_idp.issue_access_token("alice")
        settings.IDP_CLIENT_SECRET = "rotated-away-secret-value"

        response = client.get("/api/protected", headers=bearer(token))

        assert response.json()["error"] == "VerificationUnavailable"
        assert "rotated-away-secret-value" not in response.text

    def test_one_introspection_per_request(self, client, fake_idp):
        token = fake_idp.issue_access_token("root")
        response = client.get("/api/admin", headers=bearer(token))

        assert response.status_code == status.HTTP_200_OK
        assert fake_idp.calls["introspect"] == 1

    def test_no_roles_claim(self, client, fake_idp):
        token = fake_idp.issue_access_token("norole")
        response = client.get("/api/profile", headers=bearer(token))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["profile"]["roles"] == []

    def test_post_data_echo(self, client, fake_idp):
        token = fake_idp.issue_access_token("alice")
        response = client.post("/api/data", headers=bearer(token), json={"item": 1})

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["received_data"] == {"item": 1}
        assert body["processed_by"] == "alice"


# ============================================================================
# Role Guards
# ============================================================================

class TestRoleGuards:
    def test_user_role_allowed(self, client, fake_idp):
        token = fake_idp.issue_access_token("alice")
        response = client.get("/api/users", headers=bearer(token))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["accessed_by"] == "alice"

    def test_admin_role_denied(self, client, fake_idp):
        token = fake_idp.issue_access_token("alice")
        response = client.get("/api/admin", headers=bearer(token))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        body = response.json()
        assert body["error"] == "InsufficientRole"
        assert body["details"] == {"required_role": "admin", "user_roles": ["user"]}

    def test_admin_role_allowed(self, client, fake_idp):
        token = fake_idp.issue_access_token("root")
        response = client.get("/api/admin", headers=bearer(token))
        assert response.status_code == status.HTTP_200_OK

    def test_any_role_allowed(self, client, fake_idp):
        token = fake_idp.issue_access_token("alice")
        response = client.get("/api/dashboard", headers=bearer(token))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["user_roles"] == ["user"]

    def test_any_role_denied(self, client, fake_idp):
        token = fake_idp.issue_access_token("norole")
        response = client.get("/api/dashboard", headers=bearer(token))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["details"] == {
            "required_roles": ["user", "admin"],
            "user_roles": [],
        }

    def test_guard_checks_after_verification(self, client, fake_idp):
        response = client.get("/api/admin", headers=bearer("at-unknown"))
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "InvalidOrExpiredToken"

    def test_require_any_role_needs_roles(self):
        with pytest.raises(ValueError):
            require_any_role([])


class TestGuardWithoutVerification:
    @pytest.fixture
    def bare_client(self):
        app = FastAPI()

        @app.exception_handler(AuthError)
        async def handle(request, exc):
            return exc.to_response()

        @app.get("/unverified", dependencies=[Depends(require_role("user"))])
        async def unverified():
            return {"ok": True}

        return TestClient(app)

    def test_fails_closed(self, bare_client):
        response = bare_client.get("/unverified")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "Unauthenticated"


class TestIdentity:
    def test_from_claims(self):
        identity = Identity.from_claims({
            "sub": "s-1",
            "username": "fallback",
            "realm_access": {"roles": ["user", 7, "admin"]},
        })
        assert identity.username == "fallback"
        assert identity.roles == frozenset({"user", "admin"})

    @pytest.mark.parametrize("realm_access", [None, "user", {"roles": "user"}, {}])
    def test_malformed_roles_are_empty(self, realm_access):
        claims = {"sub": "s-1"}
        if realm_access is not None:
            claims["realm_access"] = realm_access
        assert Identity.from_claims(claims).roles == frozenset()


# ============================================================================
# Public Endpoints
# ============================================================================

class TestPublicEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.json()["status"] == "ok"

    def test_api_health(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "OK"
        assert body["uptime_seconds"] >= 0

    def test_public(self, client, fake_idp):
        response = client.get("/api/public")
        assert response.status_code == status.HTTP_200_OK
        assert sum(fake_idp.calls.values()) == 0

    def test_root_lists_endpoints(self, client):
        assert "GET /auth/login" in client.get("/").json()["endpoints"]["auth"]

    def test_unknown_route(self, client):
        response = client.get("/api/nope")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        body = response.json()
        assert body["error"] == "not_found"
        assert body["details"] == {"path": "/api/nope", "method": "GET"}

    def test_unhandled_error_is_generic(self, idp_client):
        app = create_app(settings=make_settings(LOG_LEVEL="DEBUG"), idp_client=idp_client)

        @app.get("/api/broken")
        async def broken():
            raise RuntimeError("database password is hunter2")

        response = TestClient(app, raise_server_exceptions=False).get("/api/broken")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        body = response.json()
        assert body["error"] == "internal_server_error"
        assert body["message"] == "An unexpected error occurred"
        assert body["details"] is None
        assert "hunter2" not in response.text
