"""
Outbound client for the IdP's OpenID Connect endpoints.

This module handles:
- Building the authorization URL for the login redirect
- Exchanging authorization codes and refresh tokens at the token endpoint
- Token introspection and userinfo reads
- Refresh token revocation at the end-session endpoint

Every call is bounded by IDP_TIMEOUT_SECONDS, and failures are normalized
into the IdpError family so callers can tell "IdP unreachable" apart from
"credential rejected".
"""

import asyncio
import hashlib
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..models import IntrospectionResult, TokenSet
from .errors import (
    IdpError,
    IdpExchangeError,
    IdpFaultKind,
    IdpRefreshError,
    IdpRejectedError,
    IdpRevokeError,
    IdpUnavailableError,
)

logger = logging.getLogger(__name__)

SCOPE = "openid profile email"
_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


def token_fingerprint(token: str) -> str:
    """Short, non-reversible token reference for logs."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


class IdpClient:
    """
    Token Exchange Client for a single IdP realm.

    Args:
        settings: Gateway settings (endpoints, client credentials, timeout)
        http_client: Optional pre-built httpx.AsyncClient (tests inject one
                     backed by httpx.MockTransport). When omitted the client
                     owns its own connection pool.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._timeout = settings.IDP_TIMEOUT_SECONDS
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # =========================================================================
    # Authorization URL
    # =========================================================================

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        """
        Build the IdP authorization endpoint URL for the login redirect.

        Args:
            state: CSRF state value
            redirect_uri: Callback URL registered at the IdP

        Returns:
            Absolute URL with client_id, redirect_uri, response_type=code,
            fixed scope and state
        """
        params = {
            "client_id": self._settings.IDP_CLIENT_ID,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": SCOPE,
            "state": state,
        }
        return f"{self._settings.authorization_endpoint}?{urlencode(params)}"

    # =========================================================================
    # Token Endpoint
    # =========================================================================

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """
        Exchange an authorization code for a token set.

        Raises:
            IdpExchangeError: On non-2xx, malformed body, network error or timeout
        """
        payload = self._client_credentials()
        payload.update({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        })
        return await self._token_request("exchange", payload, IdpExchangeError)

    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Run the refresh_token grant.

        The returned TokenSet's refresh_token is None when the IdP did not
        rotate the token.

        Raises:
            IdpRefreshError: On any failure; callers treat it as session-invalid
        """
        payload = self._client_credentials()
        payload.update({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return await self._token_request("refresh", payload, IdpRefreshError)

    async def _token_request(
        self,
        operation: str,
        payload: Dict[str, str],
        error_cls: Type[IdpError],
    ) -> TokenSet:
        response = await self._send(
            operation,
            error_cls,
            lambda: self._http.post(
                self._settings.token_endpoint,
                data=payload,
                headers=_FORM_HEADERS,
                timeout=self._timeout,
            ),
        )
        self._raise_for_status(operation, response, error_cls, rejected_cls=error_cls)

        data = self._json_body(operation, response, error_cls, kind=IdpFaultKind.REJECTED)
        try:
            return TokenSet.model_validate(data)
        except ValidationError:
            raise error_cls(
                f"IdP {operation} response is malformed (missing access_token)",
                operation=operation,
                kind=IdpFaultKind.REJECTED,
                status_code=response.status_code,
            )

    # =========================================================================
    # Introspection / Userinfo
    # =========================================================================

    async def introspect(self, access_token: str) -> IntrospectionResult:
        """
        Introspect an access token.

        Returns:
            IntrospectionResult; active=False is a valid negative answer

        Raises:
            IdpUnavailableError: Network error, timeout, 5xx or malformed body
            IdpRejectedError: The IdP refused the gateway's client credentials
        """
        payload = self._client_credentials()
        payload["token"] = access_token

        response = await self._read(
            "introspect",
            lambda: self._http.post(
                self._settings.introspection_endpoint,
                data=payload,
                headers=_FORM_HEADERS,
                timeout=self._timeout,
            ),
        )
        self._raise_for_status("introspect", response, IdpUnavailableError, rejected_cls=IdpRejectedError)

        data = self._json_body("introspect", response, IdpUnavailableError, kind=IdpFaultKind.UNAVAILABLE)
        return IntrospectionResult(active=data.get("active") is True, claims=data)

    async def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        """
        Read the userinfo claims for an access token.

        Raises:
            IdpUnavailableError: Network error, timeout, 5xx or malformed body
            IdpRejectedError: The token was refused (4xx)
        """
        response = await self._read(
            "userinfo",
            lambda: self._http.get(
                self._settings.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self._timeout,
            ),
        )
        self._raise_for_status("userinfo", response, IdpUnavailableError, rejected_cls=IdpRejectedError)
        return self._json_body("userinfo", response, IdpUnavailableError, kind=IdpFaultKind.UNAVAILABLE)

    # =========================================================================
    # Revocation
    # =========================================================================

    async def revoke(self, refresh_token: str) -> None:
        """
        End the IdP session bound to a refresh token.

        Raises:
            IdpRevokeError: On any failure; logout swallows it
        """
        payload = self._client_credentials()
        payload["refresh_token"] = refresh_token

        response = await self._send(
            "revoke",
            IdpRevokeError,
            lambda: self._http.post(
                self._settings.end_session_endpoint,
                data=payload,
                headers=_FORM_HEADERS,
                timeout=self._timeout,
            ),
        )
        self._raise_for_status("revoke", response, IdpRevokeError, rejected_cls=IdpRevokeError)
        logger.info("Revoked refresh token", extra={"token_ref": token_fingerprint(refresh_token)})

    # =========================================================================
    # Transport Helpers
    # =========================================================================

    def _client_credentials(self) -> Dict[str, str]:
        credentials = {"client_id": self._settings.IDP_CLIENT_ID}
        if self._settings.IDP_CLIENT_SECRET:
            credentials["client_secret"] = self._settings.IDP_CLIENT_SECRET
        return credentials

    async def _send(
        self,
        operation: str,
        error_cls: Type[IdpError],
        call: Callable[[], Awaitable[httpx.Response]],
    ) -> httpx.Response:
        """
        Run one outbound call under the total timeout bound.

        Transport failures and timeouts become ``error_cls`` with kind
        UNAVAILABLE.
        """
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(f"IdP {operation} timed out after {self._timeout}s")
            raise error_cls(
                f"IdP {operation} timed out",
                operation=operation,
                kind=IdpFaultKind.UNAVAILABLE,
            )
        except httpx.HTTPError as e:
            # connect, read, protocol and body decoding failures alike
            logger.warning(f"IdP {operation} transport error: {type(e).__name__}")
            raise error_cls(
                f"IdP {operation} transport failed",
                operation=operation,
                kind=IdpFaultKind.UNAVAILABLE,
            )

    async def _read(
        self,
        operation: str,
        call: Callable[[], Awaitable[httpx.Response]],
    ) -> httpx.Response:
        """Idempotent read: retried on transport-level failures only."""
        attempts = self._settings.IDP_READ_RETRIES + 1
        attempt = 1
        while True:
            try:
                return await self._send(operation, IdpUnavailableError, call)
            except IdpUnavailableError:
                if attempt >= attempts:
                    raise
                attempt += 1
                logger.info(f"Retrying IdP {operation} (attempt {attempt}/{attempts})")

    def _raise_for_status(
        self,
        operation: str,
        response: httpx.Response,
        error_cls: Type[IdpError],
        rejected_cls: Type[IdpError],
    ) -> None:
        if response.is_success:
            return

        idp_error, description = _error_fields(response)
        if response.status_code >= 500:
            cls, kind = error_cls, IdpFaultKind.UNAVAILABLE
        else:
            cls, kind = rejected_cls, IdpFaultKind.REJECTED

        logger.warning(
            f"IdP {operation} failed with HTTP {response.status_code}",
            extra={"idp_status": response.status_code, "idp_error": idp_error},
        )
        raise cls(
            f"IdP {operation} failed: {description or idp_error or f'HTTP {response.status_code}'}",
            operation=operation,
            kind=kind,
            status_code=response.status_code,
            idp_error=idp_error,
            idp_error_description=description,
        )

    def _json_body(
        self,
        operation: str,
        response: httpx.Response,
        error_cls: Type[IdpError],
        kind: IdpFaultKind,
    ) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise error_cls(
                f"IdP {operation} returned a non-JSON-object body",
                operation=operation,
                kind=kind,
                status_code=response.status_code,
            )
        return data


def _error_fields(response: httpx.Response):
    """Extract the OAuth error/error_description pair, if any."""
    try:
        data = response.json()
    except ValueError:
        return None, None
    if not isinstance(data, dict):
        return None, None
    error = data.get("error")
    description = data.get("error_description")
    return (
        error if isinstance(error, str) else None,
        description if isinstance(description, str) else None,
    )
