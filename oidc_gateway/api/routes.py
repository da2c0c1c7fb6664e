"""
API Routes - Protected Resources
================================

Sample resource endpoints behind access verification and role guards.

Security Model:
---------------
1. Protected requests carry an IdP access token as 'Authorization: Bearer'
2. verify_access_token introspects the token and attaches the Identity
3. Role guards run after verification and check realm roles
4. Handlers receive the Identity; they never see cookies

Endpoints:
----------
- GET  /api/health     : public liveness with uptime
- GET  /api/public     : public
- GET  /api/protected  : any verified identity
- GET  /api/profile    : any verified identity
- GET  /api/users      : role 'user'
- GET  /api/admin      : role 'admin'
- GET  /api/dashboard  : role 'user' or 'admin'
- POST /api/data       : any verified identity
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from ..auth.guards import require_any_role, require_role
from ..auth.verification import verify_access_token
from ..models import HealthResponse, Identity

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api", tags=["api"])

_STARTED_AT = time.monotonic()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# Public Endpoints
# ============================================================================

@api_router.get("/health", response_model=HealthResponse)
async def api_health():
    return HealthResponse(
        status="OK",
        service="oidc-gateway",
        uptime_seconds=round(time.monotonic() - _STARTED_AT, 3),
    )


@api_router.get("/public")
async def public_resource():
    return {
        "message": "Public endpoint, no authentication required",
        "data": {"timestamp": _now()},
    }


# ============================================================================
# Protected Endpoints
# ============================================================================

@api_router.get("/protected")
async def protected_resource(identity: Identity = Depends(verify_access_token)):
    """Echo the verified identity."""
    return {
        "message": "Access granted to protected resource",
        "user": identity.model_dump(),
        "timestamp": _now(),
    }


@api_router.get("/profile")
async def profile(identity: Identity = Depends(verify_access_token)):
    return {
        "message": "User profile",
        "profile": {
            "id": identity.subject,
            "username": identity.username,
            "email": identity.email,
            "name": identity.name,
            "roles": sorted(identity.roles),
        },
    }


@api_router.get(
    "/users",
    dependencies=[Depends(verify_access_token), Depends(require_role("user"))],
)
async def list_users(identity: Identity = Depends(verify_access_token)):
    return {
        "message": "User list (requires role: user)",
        "users": [
            {"id": 1, "name": "User 1", "email": "user1@example.com"},
            {"id": 2, "name": "User 2", "email": "user2@example.com"},
        ],
        "accessed_by": identity.username,
    }


@api_router.get(
    "/admin",
    dependencies=[Depends(verify_access_token), Depends(require_role("admin"))],
)
async def admin_panel(identity: Identity = Depends(verify_access_token)):
    return {
        "message": "Administration panel (requires role: admin)",
        "data": {"system_status": "operational"},
        "accessed_by": identity.username,
    }


@api_router.get(
    "/dashboard",
    dependencies=[Depends(verify_access_token), Depends(require_any_role(["user", "admin"]))],
)
async def dashboard(identity: Identity = Depends(verify_access_token)):
    return {
        "message": "Dashboard (requires role: user or admin)",
        "data": {"user_roles": sorted(identity.roles)},
    }


@api_router.post("/data")
async def receive_data(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    identity: Identity = Depends(verify_access_token),
):
    payload = payload or {}
    logger.info(f"Data received from {identity.subject}", extra={"keys": sorted(payload)})
    return {
        "message": "Data received",
        "received_data": payload,
        "processed_by": identity.username,
        "timestamp": _now(),
    }
