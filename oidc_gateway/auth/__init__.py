"""
Authentication Package

This package handles the authentication and authorization functionality of
the gateway against an external OpenID Connect identity provider (IdP).

Key responsibilities:
- Login redirect and CSRF state handling
- Authorization code to token exchange
- Refresh token rotation with per-session single-flight
- Bearer token verification by introspection
- Role-based access guards

Modules:
- state: CSRF state generation and signed cookie encoding
- idp_client: Outbound calls to the IdP's token, introspection, userinfo and logout endpoints
- cookies: Session cookie names and flags
- single_flight: Call coalescing for concurrent refreshes
- flow: Authorization flow controller (login, callback, refresh, logout, whoami)
- verification: Bearer token verification dependency
- guards: Role requirement dependencies
- routes: Public authentication endpoints (/auth/login, /auth/callback, etc.)

The authentication flow:
1. Client initiates login via /auth/login
2. User authenticates at the IdP
3. Gateway receives the authorization code via /auth/callback
4. Gateway validates state, exchanges the code, stores refresh/id tokens in cookies
5. Client uses the access token for API requests and /auth/refresh to renew it
"""

from .guards import require_any_role, require_role
from .routes import auth_router
from .verification import verify_access_token

__all__ = [
    "auth_router",
    "require_any_role",
    "require_role",
    "verify_access_token",
]
