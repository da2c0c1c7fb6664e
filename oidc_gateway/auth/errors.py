"""
Error taxonomy for the authentication subsystem.

Three families:
- ProtocolError: a login flow that cannot continue (CSRF mismatch, missing
  code, failed exchange). Rendered as a redirect with a reason code.
- IdpError: an outbound IdP call failed. Subdivided by kind into REJECTED
  (the IdP answered 4xx or with an unusable body) and UNAVAILABLE (network
  error, timeout, 5xx).
- AuthError: the caller is not authenticated or not authorized. Rendered as
  a 401/403 JSON body with a stable code.
"""

import enum
from typing import Any, Dict, List, Optional

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..models import ErrorResponse


# =============================================================================
# Protocol Errors
# =============================================================================

INVALID_STATE = "invalid_state"
NO_CODE = "no_code"
TOKEN_EXCHANGE_FAILED = "token_exchange_failed"


class ProtocolError(Exception):
    """Login flow aborted; ``reason`` is the code handed to the error surface."""

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason)


# =============================================================================
# IdP Errors
# =============================================================================

class IdpFaultKind(str, enum.Enum):
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"


class IdpError(Exception):
    """
    Base exception for failed IdP calls.

    Messages are built only from the operation name, the HTTP status and the
    IdP's own ``error``/``error_description`` fields; request payloads
    (client secret, codes, tokens) never reach them.
    """

    default_kind = IdpFaultKind.UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        kind: Optional[IdpFaultKind] = None,
        status_code: Optional[int] = None,
        idp_error: Optional[str] = None,
        idp_error_description: Optional[str] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.kind = kind or self.default_kind
        self.status_code = status_code
        self.idp_error = idp_error
        self.idp_error_description = idp_error_description

    @property
    def unavailable(self) -> bool:
        return self.kind is IdpFaultKind.UNAVAILABLE

    def log_context(self) -> Dict[str, Any]:
        return {
            "idp_operation": self.operation,
            "idp_fault_kind": self.kind.value,
            "idp_status": self.status_code,
            "idp_error": self.idp_error,
        }


class IdpRejectedError(IdpError):
    """The IdP answered, but refused the request (4xx)."""
    default_kind = IdpFaultKind.REJECTED


class IdpUnavailableError(IdpError):
    """The IdP could not be reached, timed out, or failed (5xx)."""
    default_kind = IdpFaultKind.UNAVAILABLE


class IdpExchangeError(IdpError):
    """Authorization code exchange failed; the user should retry login."""


class IdpRefreshError(IdpError):
    """Refresh grant failed; the session is invalid and needs a new login."""


class IdpRevokeError(IdpError):
    """Refresh token revocation failed; always swallowed by logout."""


# =============================================================================
# Authentication / Authorization Errors
# =============================================================================

class AuthError(Exception):
    """Base exception for 401/403 outcomes with a stable code."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "Unauthenticated"
    message = "Authentication required"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)

    def to_response(self) -> JSONResponse:
        return error_response(self.code, self.message, self.status_code, self.details)


class MissingTokenError(AuthError):
    code = "MissingToken"
    message = "No authentication token provided"


class InvalidOrExpiredTokenError(AuthError):
    code = "InvalidOrExpiredToken"
    message = "Invalid or expired token"


class VerificationUnavailableError(AuthError):
    code = "VerificationUnavailable"
    message = "Token could not be verified"


class UnauthenticatedError(AuthError):
    code = "Unauthenticated"
    message = "Not authenticated"


class InsufficientRoleError(AuthError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "InsufficientRole"
    message = "Insufficient permissions"

    def __init__(self, required: List[str], held: List[str], any_of: bool = False):
        if any_of:
            details: Dict[str, Any] = {"required_roles": list(required)}
        else:
            details = {"required_role": required[0]}
        details["user_roles"] = sorted(held)
        super().__init__(details=details)


class NoRefreshTokenError(AuthError):
    code = "NO_REFRESH_TOKEN"
    message = "No refresh token available"


class RefreshFailedError(AuthError):
    code = "REFRESH_FAILED"
    message = "Could not refresh the token"


# =============================================================================
# Response Helpers
# =============================================================================

def error_response(
    code: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """
    Build a JSON error response in the ErrorResponse shape.

    401 responses carry ``WWW-Authenticate: Bearer``.
    """
    body = ErrorResponse(error=code, message=message, details=details)
    response_headers = dict(headers or {})
    if status_code == status.HTTP_401_UNAUTHORIZED:
        response_headers.setdefault("WWW-Authenticate", "Bearer")
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body),
        headers=response_headers,
    )
