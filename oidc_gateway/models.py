"""
Data Models Module

This module defines Pydantic models for the values exchanged with the IdP
and returned to browser clients.

Models are organized by functional area:
- Token models (token sets issued by the IdP, refresh responses)
- Identity models (introspection results, normalized caller identity)
- Response models (logout, health, errors)
"""

from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, Field, field_serializer


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Token Models
# ============================================================================

class TokenSet(BaseModel):
    """Tokens issued by the IdP on code exchange or refresh."""
    access_token: str = Field(..., min_length=1, description="Short-lived access token")
    refresh_token: Optional[str] = Field(None, description="Refresh token, absent when the IdP does not rotate")
    id_token: Optional[str] = Field(None, description="OpenID Connect ID token")
    expires_in: int = Field(default=300, ge=0, description="Access token lifetime in seconds")
    token_type: str = Field(default="Bearer", description="Token type")


class RefreshResponse(BaseModel):
    """Response body of a successful POST /auth/refresh."""
    access_token: str = Field(..., description="New access token")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_in: int = Field(..., description="Token expiration time in seconds")


# ============================================================================
# Identity Models
# ============================================================================

class IntrospectionResult(BaseModel):
    """Outcome of a token introspection call."""
    active: bool = Field(..., description="Whether the IdP considers the token live")
    claims: Dict[str, Any] = Field(default_factory=dict, description="Raw introspection claims")


class Identity(BaseModel):
    """
    Normalized caller identity derived from introspection claims.

    Rebuilt on every verified request and never persisted.
    """
    subject: Optional[str] = Field(None, description="Subject identifier (sub)")
    username: Optional[str] = Field(None, description="Login name")
    email: Optional[str] = Field(None, description="Email address")
    name: Optional[str] = Field(None, description="Display name")
    roles: FrozenSet[str] = Field(default_factory=frozenset, description="Realm roles held")

    @field_serializer("roles")
    def _serialize_roles(self, roles: FrozenSet[str]) -> List[str]:
        return sorted(roles)

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Identity":
        """
        Build an Identity from introspection claims.

        Roles are read from ``realm_access.roles``; anything missing or
        malformed yields an empty role set.
        """
        return cls(
            subject=claims.get("sub"),
            username=claims.get("preferred_username") or claims.get("username"),
            email=claims.get("email"),
            name=claims.get("name"),
            roles=frozenset(_realm_roles(claims)),
        )

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return not self.roles.isdisjoint(roles)


def _realm_roles(claims: Dict[str, Any]) -> List[str]:
    realm_access = claims.get("realm_access")
    if not isinstance(realm_access, dict):
        return []
    roles = realm_access.get("roles")
    if not isinstance(roles, list):
        return []
    return [role for role in roles if isinstance(role, str)]


# ============================================================================
# Response Models
# ============================================================================

class LogoutResponse(BaseModel):
    """Response body of POST /auth/logout."""
    message: str = Field(default="Logged out successfully")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    timestamp: datetime = Field(default_factory=_utcnow, description="Check timestamp")
    uptime_seconds: Optional[float] = Field(None, description="Seconds since process start")


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Stable machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=_utcnow, description="Error timestamp")
