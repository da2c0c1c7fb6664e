"""
Role-based access guards.

Guards read the Identity attached by ``verify_access_token`` and must be
listed after it in a route's dependencies:

    @router.get("/admin", dependencies=[
        Depends(verify_access_token),
        Depends(require_role("admin")),
    ])
"""

import logging
from typing import Awaitable, Callable, Iterable, List

from fastapi import Request

from ..models import Identity
from .errors import InsufficientRoleError, UnauthenticatedError

logger = logging.getLogger(__name__)


def _attached_identity(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if not isinstance(identity, Identity):
        # guard mounted without verification in front of it: fail closed
        logger.error(f"Role guard reached without identity on {request.url.path}")
        raise UnauthenticatedError()
    return identity


def require_role(role: str) -> Callable[[Request], Awaitable[Identity]]:
    """
    Build a dependency that passes iff the identity holds ``role``.

    Raises (from the dependency):
        UnauthenticatedError: No identity attached
        InsufficientRoleError: Role missing (403, names required and held roles)
    """

    async def dependency(request: Request) -> Identity:
        identity = _attached_identity(request)
        if not identity.has_role(role):
            raise InsufficientRoleError(required=[role], held=list(identity.roles))
        return identity

    return dependency


def require_any_role(roles: Iterable[str]) -> Callable[[Request], Awaitable[Identity]]:
    """Build a dependency that passes iff the identity holds at least one of ``roles``."""
    required: List[str] = list(roles)
    if not required:
        raise ValueError("require_any_role needs at least one role")

    async def dependency(request: Request) -> Identity:
        identity = _attached_identity(request)
        if not identity.has_any_role(required):
            raise InsufficientRoleError(
                required=required,
                held=list(identity.roles),
                any_of=True,
            )
        return identity

    return dependency
