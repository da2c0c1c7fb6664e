"""
Authentication routes for the OIDC authorization code flow.

Endpoints:
- GET  /auth/login     : redirect to the IdP with a fresh CSRF state
- GET  /auth/callback  : validate state, exchange the code, set session cookies
- POST /auth/refresh   : new access token from the refresh_token cookie
- POST /auth/logout    : revoke at the IdP (best effort) and clear cookies
- GET  /auth/user      : userinfo claims for the bearer token
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..models import ErrorResponse, LogoutResponse, RefreshResponse
from .flow import AuthFlowController

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


def get_flow_controller(request: Request) -> AuthFlowController:
    """
    Dependency to get the flow controller from app state.

    Raises:
        HTTPException: 503 if the application was assembled without one
    """
    controller = getattr(request.app.state, "flow_controller", None)
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication flow not initialized",
        )
    return controller


@auth_router.get("/login", status_code=status.HTTP_302_FOUND)
async def login(
    request: Request,
    controller: AuthFlowController = Depends(get_flow_controller),
):
    """Initiate the login flow by redirecting to the IdP."""
    return await controller.login(request)


@auth_router.get("/callback", status_code=status.HTTP_302_FOUND)
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the IdP"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    controller: AuthFlowController = Depends(get_flow_controller),
):
    """
    Handle the IdP's redirect back to the gateway.

    Always answers with a redirect: to the frontend success surface carrying
    ``token`` and ``expires_in``, or to the error surface carrying ``error``.
    """
    return await controller.callback(request, code=code, state=state, error=error)


@auth_router.post(
    "/refresh",
    response_model=RefreshResponse,
    responses={401: {"model": ErrorResponse}},
)
async def refresh(
    request: Request,
    controller: AuthFlowController = Depends(get_flow_controller),
):
    """Renew the access token using the refresh_token cookie."""
    return await controller.refresh(request)


@auth_router.post("/logout", response_model=LogoutResponse)
async def logout(
    request: Request,
    controller: AuthFlowController = Depends(get_flow_controller),
):
    """Close the session at the IdP (best effort) and clear session cookies."""
    return await controller.logout(request)


@auth_router.get("/user", responses={401: {"model": ErrorResponse}})
async def user(
    request: Request,
    controller: AuthFlowController = Depends(get_flow_controller),
):
    """Return the IdP's userinfo claims for the bearer token, verbatim."""
    return await controller.whoami(request)
