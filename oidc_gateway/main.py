"""
FastAPI Gateway Application Factory
===================================

This is the main entry point for the OIDC relying-party gateway that sits
between browser clients and the external identity provider.

Architecture:
    Browser -> Gateway (this service) -> IdP (token, introspection, userinfo, logout)

Routers:
    - /auth/*       : Authorization code flow (login, callback, refresh, logout, user)
    - /api/*        : Resources protected by token introspection and role guards
    - /health       : Health check endpoint

Running the Service:
    Development:
        uvicorn oidc_gateway.main:create_app --factory --reload --host 0.0.0.0 --port 4000

    Production:
        uvicorn oidc_gateway.main:create_app --factory --host 0.0.0.0 --port 4000 --workers 4

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn oidc_gateway.main:create_app --factory --reload
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from .api import api_router
from .auth import auth_router
from .auth.cookies import SessionCookieStore
from .auth.errors import AuthError, error_response
from .auth.flow import AuthFlowController
from .auth.idp_client import IdpClient
from .auth.single_flight import SingleFlight
from .config import Settings, get_settings, validate_configuration

SERVICE_NAME = "oidc-gateway"
SERVICE_VERSION = "1.0.0"

logger = logging.getLogger("oidc_gateway.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Report configuration problems
        - Log service startup information

    Shutdown tasks:
        - Close the IdP client's connection pool
    """
    settings: Settings = app.state.settings

    status_report = validate_configuration(settings)
    for error in status_report["errors"]:
        logger.error(f"Configuration error: {error}")
    for warning in status_report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")

    logger.info(
        "Gateway started",
        extra={
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "environment": settings.ENVIRONMENT,
            "realm_url": settings.realm_url,
        }
    )

    yield

    logger.info("Shutting down gateway")
    await app.state.idp_client.aclose()
    logger.info("Gateway shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    idp_client: Optional[IdpClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - IdP client, cookie store and flow controller on app.state
        - CORS middleware and request logging
        - Route handlers
        - Exception handlers

    Args:
        settings: Explicit settings (defaults to environment via get_settings)
        idp_client: Pre-built IdP client (tests inject one over a mock transport)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="OIDC Gateway",
        description="OAuth2/OpenID Connect relying-party gateway with cookie-carried sessions",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Collaborators are built eagerly so that the app works without lifespan
    # (e.g. under httpx.ASGITransport)
    idp_client = idp_client or IdpClient(settings)
    cookie_store = SessionCookieStore(settings)
    app.state.settings = settings
    app.state.idp_client = idp_client
    app.state.flow_controller = AuthFlowController(
        settings=settings,
        idp_client=idp_client,
        cookie_store=cookie_store,
        refresh_flight=SingleFlight(),
    )

    # Configure CORS
    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            }
        )
        return response

    # Mount routers
    app.include_router(auth_router)
    app.include_router(api_router)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION
        }

    # Root endpoint
    @app.get("/", tags=["System"])
    async def root():
        """
        Root endpoint with service information.

        Returns:
            dict: Service metadata and available endpoints
        """
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "endpoints": {
                "auth": [
                    "GET /auth/login",
                    "GET /auth/callback",
                    "POST /auth/refresh",
                    "POST /auth/logout",
                    "GET /auth/user",
                ],
                "public": ["GET /", "GET /health", "GET /api/health", "GET /api/public"],
                "protected": [
                    "GET /api/protected",
                    "GET /api/profile",
                    "GET /api/users (role: user)",
                    "GET /api/admin (role: admin)",
                    "GET /api/dashboard (role: user or admin)",
                    "POST /api/data",
                ],
            }
        }

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        logger.info(
            f"{exc.code} on {request.method} {request.url.path}",
            extra={"error_code": exc.code, "status_code": exc.status_code}
        )
        return exc.to_response()

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return error_response(
                "not_found",
                "Endpoint not found",
                404,
                details={"path": request.url.path, "method": request.method},
            )
        return error_response(
            "http_error",
            str(exc.detail),
            exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error with its traceback and returns a standardized error
        response that carries no internal detail.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return error_response(
            "internal_server_error",
            "An unexpected error occurred",
            500,
        )

    return app


if __name__ == "__main__":
    """
    Direct execution entry point.

    This allows running the service directly with: python -m oidc_gateway.main
    However, using uvicorn command is recommended for production.
    """
    settings = get_settings()

    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
