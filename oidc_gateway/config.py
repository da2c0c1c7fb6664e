"""
Configuration module for the OIDC relying-party gateway.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider (IdP) connection, cookie session policy, redirect
targets, and CORS settings.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the IdP (OIDC), cookie-carried sessions, redirect
    surfaces, and security policies are defined here. The settings object is
    injected into the flow controller and the IdP client at construction.
    """

    # =========================================================================
    # Identity Provider (OIDC) Configuration
    # =========================================================================

    IDP_BASE_URL: str = Field(
        ...,
        description="IdP root URL (e.g., http://localhost:8080)",
        min_length=1,
    )

    IDP_REALM: str = Field(
        default="myapp-realm",
        description="Realm (tenant) whose OpenID Connect endpoints are used",
        min_length=1,
    )

    IDP_CLIENT_ID: str = Field(
        ...,
        description="Confidential client id registered at the IdP",
        min_length=1,
    )

    IDP_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret for the confidential client",
    )

    IDP_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Upper bound for every outbound IdP call, in seconds",
        gt=0,
        le=60,
    )

    IDP_READ_RETRIES: int = Field(
        default=1,
        description="Retries for idempotent IdP reads (introspect, userinfo) on transport errors",
        ge=0,
        le=3,
    )

    # =========================================================================
    # Redirect Targets
    # =========================================================================

    PUBLIC_BASE_URL: str = Field(
        default="http://localhost:4000",
        description="Public origin of this gateway; the OAuth redirect URI is derived from it",
    )

    FRONTEND_URL: str = Field(
        default="http://localhost:3000",
        description="Origin of the browser application receiving login results",
    )

    AUTH_SUCCESS_PATH: str = Field(
        default="/auth/success",
        description="Frontend path receiving token and expires_in after login",
    )

    AUTH_ERROR_PATH: str = Field(
        default="/auth/error",
        description="Frontend path receiving the error reason code after a failed login",
    )

    # =========================================================================
    # Cookie Session Configuration
    # =========================================================================

    ENVIRONMENT: str = Field(
        default="development",
        description="Deployment environment (development, test, production)",
    )

    SESSION_COOKIE_SECRET: str = Field(
        ...,
        description="Secret used to sign the csrf_state cookie (must be cryptographically secure)",
        min_length=32,
    )

    CSRF_STATE_TTL_SECONDS: int = Field(
        default=600,
        description="Lifetime of a pending login's CSRF state",
        ge=60,
        le=3600,
    )

    REFRESH_COOKIE_MAX_AGE_SECONDS: int = Field(
        default=30 * 24 * 60 * 60,
        description="Max-age of the refresh_token cookie (30 days)",
        ge=60,
    )

    # =========================================================================
    # Server / CORS / Logging
    # =========================================================================

    HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the gateway server",
    )

    PORT: int = Field(
        default=4000,
        description="Port to bind the gateway server",
        ge=1,
        le=65535,
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra env vars not defined here
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def realm_url(self) -> str:
        """Base URL of the realm's OpenID Connect protocol endpoints."""
        return f"{self.IDP_BASE_URL}/realms/{self.IDP_REALM}/protocol/openid-connect"

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.realm_url}/auth"

    @property
    def token_endpoint(self) -> str:
        return f"{self.realm_url}/token"

    @property
    def introspection_endpoint(self) -> str:
        return f"{self.realm_url}/token/introspect"

    @property
    def userinfo_endpoint(self) -> str:
        return f"{self.realm_url}/userinfo"

    @property
    def end_session_endpoint(self) -> str:
        return f"{self.realm_url}/logout"

    @property
    def redirect_uri(self) -> str:
        """
        OAuth redirect URI registered at the IdP.

        Returns:
            Callback URL on this gateway.
        """
        return f"{self.PUBLIC_BASE_URL}/auth/callback"

    @property
    def cookie_secure(self) -> bool:
        """Cookies carry the Secure flag only in production."""
        return self.ENVIRONMENT == "production"

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("IDP_BASE_URL", "PUBLIC_BASE_URL", "FRONTEND_URL")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """
        Validate that a base URL is absolute http(s) and strip the trailing slash.

        Raises:
            ValueError: If the URL has no http:// or https:// scheme
        """
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(
                f"Invalid URL: '{v}'. Expected an absolute http:// or https:// URL"
            )
        return v.rstrip("/")

    @field_validator("AUTH_SUCCESS_PATH", "AUTH_ERROR_PATH")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Redirect path must start with '/', got: {v}")
        return v

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "test", "production"]
        v = v.strip().lower()
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}, got: {v}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.strip().upper()
        if v not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {v}")
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    This is called during application startup so that misconfiguration is
    visible in the logs before the first login attempt.

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    if not settings.IDP_CLIENT_SECRET:
        warnings.append("IDP_CLIENT_SECRET is not set (required for confidential clients)")

    if settings.ENVIRONMENT == "production":
        if not settings.PUBLIC_BASE_URL.startswith("https://"):
            errors.append("PUBLIC_BASE_URL must use https in production (Secure cookies)")
        if not settings.FRONTEND_URL.startswith("https://"):
            warnings.append("FRONTEND_URL is not https in production")
    elif settings.PUBLIC_BASE_URL.startswith("https://"):
        warnings.append("Serving over https without Secure cookies (ENVIRONMENT is not production)")

    if not settings.allowed_origins_list:
        warnings.append("ALLOWED_ORIGINS is empty; browsers on other origins cannot call the gateway")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "realm_url": settings.realm_url,
        "redirect_uri": settings.redirect_uri,
    }
