"""
Access verification for protected routes.

Every protected request is checked by introspecting its bearer token at the
IdP (one round trip, no local caching). A successful check attaches an
Identity to ``request.state.identity`` for downstream guards and handlers.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status

from ..models import Identity
from .errors import (
    IdpError,
    InvalidOrExpiredTokenError,
    MissingTokenError,
    VerificationUnavailableError,
)
from .idp_client import IdpClient, token_fingerprint

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: Optional[str]) -> str:
    """
    Extract Bearer token from Authorization header.

    Args:
        authorization: Authorization header value

    Returns:
        Extracted token string

    Raises:
        MissingTokenError: If the header is absent or not 'Bearer <token>'
    """
    if not authorization:
        raise MissingTokenError()

    parts = authorization.split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise MissingTokenError(
            "Invalid Authorization header format. Expected: 'Bearer <token>'"
        )

    return parts[1]


def get_idp_client(request: Request) -> IdpClient:
    """
    Dependency to get the IdP client from app state.

    Raises:
        HTTPException: 503 if the application was assembled without one
    """
    client = getattr(request.app.state, "idp_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider client not initialized",
        )
    return client


async def verify_access_token(request: Request) -> Identity:
    """
    FastAPI dependency verifying the request's bearer token by introspection.

    Usage in routes:
        @router.get("/protected")
        async def protected(identity: Identity = Depends(verify_access_token)):
            ...

    Returns:
        Identity built from the introspection claims (also attached to
        request.state.identity)

    Raises:
        MissingTokenError: No usable Authorization header (no network call made)
        VerificationUnavailableError: The introspection call itself failed
        InvalidOrExpiredTokenError: The IdP reports the token inactive
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    idp_client = get_idp_client(request)

    try:
        result = await idp_client.introspect(token)
    except IdpError as e:
        # operators see the fault kind; callers get the same generic message
        logger.warning(
            f"Token verification unavailable: {e}",
            extra={**e.log_context(), "path": request.url.path},
        )
        raise VerificationUnavailableError() from e

    if not result.active:
        logger.info(
            "Rejected inactive token",
            extra={"token_ref": token_fingerprint(token), "path": request.url.path},
        )
        raise InvalidOrExpiredTokenError()

    identity = Identity.from_claims(result.claims)
    request.state.identity = identity

    logger.debug(
        f"Verified token for subject {identity.subject}",
        extra={"roles": sorted(identity.roles)},
    )
    return identity
