"""
CSRF state generation for the authorization code flow.

A pending login carries exactly one state value. The raw value travels to the
IdP as the ``state`` query parameter; the browser keeps a signed copy in the
``csrf_state`` cookie so that nothing is stored server-side.
"""

import logging
import secrets
import time
from typing import Optional

import jwt
from jwt.exceptions import InvalidTokenError
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

STATE_BYTES = 32
STATE_TTL_SECONDS = 600
_COOKIE_ALGORITHM = "HS256"


class CsrfState(BaseModel):
    """A CSRF state value and its validity window."""
    value: str = Field(..., min_length=1)
    issued_at: int = Field(..., description="Unix timestamp of issuance")
    ttl: int = Field(default=STATE_TTL_SECONDS, gt=0)

    @property
    def expires_at(self) -> int:
        return self.issued_at + self.ttl

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at

    def to_cookie(self, secret: str) -> str:
        """
        Serialize the state as a signed cookie value.

        Args:
            secret: HMAC key (SESSION_COOKIE_SECRET)

        Returns:
            Compact HS256 JWT carrying state, iat and exp
        """
        payload = {
            "state": self.value,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }
        return jwt.encode(payload, secret, algorithm=_COOKIE_ALGORITHM)


def new_state(ttl: int = STATE_TTL_SECONDS) -> CsrfState:
    """
    Generate a fresh, unguessable CSRF state (256 bits from the OS CSPRNG).

    Args:
        ttl: Lifetime of the state in seconds

    Returns:
        CsrfState; the caller places it in a cookie
    """
    return CsrfState(
        value=secrets.token_urlsafe(STATE_BYTES),
        issued_at=int(time.time()),
        ttl=ttl,
    )


def read_state_cookie(raw: Optional[str], secret: str) -> Optional[CsrfState]:
    """
    Verify and decode a csrf_state cookie value.

    Returns:
        The CsrfState, or None when the cookie is absent, tampered with,
        malformed or expired
    """
    if not raw:
        return None

    try:
        payload = jwt.decode(
            raw,
            secret,
            algorithms=[_COOKIE_ALGORITHM],
            options={"require": ["state", "iat", "exp"]},
        )
    except InvalidTokenError as e:
        logger.info(f"Rejected csrf_state cookie: {type(e).__name__}")
        return None

    value = payload.get("state")
    if not isinstance(value, str) or not value:
        return None

    return CsrfState(
        value=value,
        issued_at=int(payload["iat"]),
        ttl=max(int(payload["exp"]) - int(payload["iat"]), 1),
    )


def states_match(expected: Optional[str], received: Optional[str]) -> bool:
    """Constant-time comparison; empty values never match."""
    if not expected or not received:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))
