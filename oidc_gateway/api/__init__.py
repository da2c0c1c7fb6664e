"""
API Package
===========

Resource endpoints protected by bearer token verification and role guards.

Usage:
------
    from oidc_gateway.api import api_router
    app.include_router(api_router)
"""

from .routes import api_router

__all__ = ["api_router"]
