"""
Authorization flow controller.

Implements the OAuth 2.0 / OIDC authorization code flow as a state machine
whose state lives entirely in the browser's cookies:

    ANONYMOUS -> PENDING_CALLBACK -> AUTHENTICATED -> (REFRESHING)
              -> AUTHENTICATED | ANONYMOUS

Each operation returns the Starlette response it built, with any cookie
mutation applied to that response.
"""

import enum
import hashlib
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from ..config import Settings
from ..models import LogoutResponse, RefreshResponse, TokenSet
from .cookies import SessionCookieStore
from .errors import (
    INVALID_STATE,
    NO_CODE,
    TOKEN_EXCHANGE_FAILED,
    IdpError,
    IdpExchangeError,
    IdpRefreshError,
    InvalidOrExpiredTokenError,
    NoRefreshTokenError,
    ProtocolError,
    RefreshFailedError,
)
from .idp_client import IdpClient, token_fingerprint
from .single_flight import SingleFlight
from .state import new_state, read_state_cookie, states_match
from .verification import extract_bearer_token

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    PENDING_CALLBACK = "pending_callback"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


def refresh_flight_key(refresh_token: str) -> str:
    """Session identifier for the single-flight guard."""
    return hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()


class AuthFlowController:
    """
    Orchestrates login, callback, refresh, logout and whoami.

    Args:
        settings: Gateway settings (redirect targets, cookie secret, TTLs)
        idp_client: Token Exchange Client
        cookie_store: Session cookie helpers
        refresh_flight: Single-flight guard shared by concurrent refreshes
    """

    def __init__(
        self,
        settings: Settings,
        idp_client: IdpClient,
        cookie_store: SessionCookieStore,
        refresh_flight: Optional[SingleFlight] = None,
    ):
        self._settings = settings
        self._idp = idp_client
        self._cookies = cookie_store
        self._refresh_flight = refresh_flight or SingleFlight()

    # =========================================================================
    # Session State
    # =========================================================================

    def describe_session(self, request: Request) -> SessionState:
        """
        Derive the session state from the request's cookies alone.

        A refresh for this session currently in flight reports REFRESHING.
        """
        refresh_token = self._cookies.read_refresh_token(request)
        if refresh_token:
            if self._refresh_flight.in_flight(refresh_flight_key(refresh_token)):
                return SessionState.REFRESHING
            return SessionState.AUTHENTICATED

        pending = read_state_cookie(
            self._cookies.read_csrf_state(request),
            self._settings.SESSION_COOKIE_SECRET,
        )
        if pending is not None:
            return SessionState.PENDING_CALLBACK
        return SessionState.ANONYMOUS

    def _transition(self, source: SessionState, target: SessionState, operation: str) -> None:
        logger.info(
            f"Session {source.value} -> {target.value} ({operation})",
            extra={"operation": operation, "from_state": source.value, "to_state": target.value},
        )

    # =========================================================================
    # Login
    # =========================================================================

    async def login(self, request: Request) -> RedirectResponse:
        """
        Start a login: issue a CSRF state and redirect to the IdP.

        Returns:
            302 to the IdP authorization endpoint with csrf_state set
        """
        source = self.describe_session(request)
        state = new_state(ttl=self._settings.CSRF_STATE_TTL_SECONDS)

        authorization_url = self._idp.build_authorization_url(
            state=state.value,
            redirect_uri=self._settings.redirect_uri,
        )

        response = RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)
        self._cookies.set_csrf_state(
            response,
            state.to_cookie(self._settings.SESSION_COOKIE_SECRET),
        )

        self._transition(source, SessionState.PENDING_CALLBACK, "login")
        return response

    # =========================================================================
    # Callback
    # =========================================================================

    async def callback(
        self,
        request: Request,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
    ) -> RedirectResponse:
        """
        Complete a login from the IdP's redirect.

        Order of checks: IdP error, then CSRF state (before looking at the
        code and before any outbound call), then code presence, then the
        exchange. The csrf_state cookie is cleared on every outcome.

        Returns:
            302 to the success surface (token, expires_in) with the
            refresh_token/id_token cookies set, or 302 to the error surface
            with a reason code and no session cookies set
        """
        raw_cookie = self._cookies.read_csrf_state(request)

        try:
            token_set = await self._complete_callback(raw_cookie, code, state, error)
        except ProtocolError as e:
            logger.warning(f"Login callback aborted: {e.reason}")
            response = RedirectResponse(
                url=self._frontend_url(self._settings.AUTH_ERROR_PATH, {"error": e.reason}),
                status_code=status.HTTP_302_FOUND,
            )
            self._cookies.clear_csrf_state(response)
            self._transition(SessionState.PENDING_CALLBACK, SessionState.ANONYMOUS, "callback")
            return response

        # access token goes to the browser once, in the redirect; never into a cookie
        response = RedirectResponse(
            url=self._frontend_url(
                self._settings.AUTH_SUCCESS_PATH,
                {"token": token_set.access_token, "expires_in": token_set.expires_in},
            ),
            status_code=status.HTTP_302_FOUND,
        )
        self._cookies.clear_csrf_state(response)
        self._store_session(response, token_set, rotate_only=False)

        self._transition(SessionState.PENDING_CALLBACK, SessionState.AUTHENTICATED, "callback")
        return response

    async def _complete_callback(
        self,
        raw_cookie: Optional[str],
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
    ) -> TokenSet:
        if error:
            raise ProtocolError(error, f"IdP returned error: {error}")

        expected = read_state_cookie(raw_cookie, self._settings.SESSION_COOKIE_SECRET)
        if expected is None or not states_match(expected.value, state):
            raise ProtocolError(INVALID_STATE, "CSRF state missing or mismatched")

        if not code:
            raise ProtocolError(NO_CODE, "Callback carried no authorization code")

        try:
            return await self._idp.exchange_code(code, self._settings.redirect_uri)
        except IdpExchangeError as e:
            logger.error(f"Token exchange failed: {e}", extra=e.log_context())
            raise ProtocolError(TOKEN_EXCHANGE_FAILED, str(e)) from e

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, request: Request) -> JSONResponse:
        """
        Exchange the refresh_token cookie for a new access token.

        Concurrent refreshes of the same session share a single IdP call.

        Returns:
            200 {access_token, token_type, expires_in}; the refresh_token
            cookie is rewritten only when the IdP rotated it.
            401 NO_REFRESH_TOKEN without any outbound call when the cookie is
            absent. 401 REFRESH_FAILED with both session cookies cleared on
            any IdP failure, rejected or unavailable.
        """
        refresh_token = self._cookies.read_refresh_token(request)
        if not refresh_token:
            return NoRefreshTokenError().to_response()

        try:
            token_set = await self._refresh_flight.do(
                refresh_flight_key(refresh_token),
                lambda: self._idp.refresh(refresh_token),
            )
        except IdpRefreshError as e:
            logger.warning(
                f"Refresh failed, clearing session: {e}",
                extra={**e.log_context(), "token_ref": token_fingerprint(refresh_token)},
            )
            details = {"reason": e.idp_error_description} if e.idp_error_description else None
            response = RefreshFailedError(details=details).to_response()
            self._cookies.clear_session(response)
            self._transition(SessionState.REFRESHING, SessionState.ANONYMOUS, "refresh")
            return response

        body = RefreshResponse(
            access_token=token_set.access_token,
            token_type=token_set.token_type or "Bearer",
            expires_in=token_set.expires_in,
        )
        response = JSONResponse(content=body.model_dump())
        self._store_session(response, token_set, rotate_only=True)

        self._transition(SessionState.REFRESHING, SessionState.AUTHENTICATED, "refresh")
        return response

    # =========================================================================
    # Logout
    # =========================================================================

    async def logout(self, request: Request) -> JSONResponse:
        """
        End the session: best-effort IdP revocation, then clear cookies.

        Always 200, with or without a session, whatever the IdP answers.
        """
        source = self.describe_session(request)
        refresh_token = self._cookies.read_refresh_token(request)

        if refresh_token:
            try:
                await self._idp.revoke(refresh_token)
            except IdpError as e:
                # local teardown proceeds regardless
                logger.warning(f"IdP logout failed, clearing cookies anyway: {e}", extra=e.log_context())
            except Exception:
                logger.exception("Unexpected error during IdP logout, clearing cookies anyway")

        response = JSONResponse(content=LogoutResponse().model_dump())
        self._cookies.clear_session(response)

        self._transition(source, SessionState.ANONYMOUS, "logout")
        return response

    # =========================================================================
    # Whoami
    # =========================================================================

    async def whoami(self, request: Request) -> JSONResponse:
        """
        Return the IdP's userinfo claims for the request's bearer token.

        Does not read or write cookies.

        Raises:
            MissingTokenError: No usable Authorization header
            InvalidOrExpiredTokenError: The userinfo call failed
        """
        token = extract_bearer_token(request.headers.get("Authorization"))

        try:
            claims = await self._idp.fetch_userinfo(token)
        except IdpError as e:
            logger.info(f"Userinfo lookup failed: {e}", extra=e.log_context())
            raise InvalidOrExpiredTokenError() from e

        return JSONResponse(content=claims)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _store_session(self, response, token_set: TokenSet, rotate_only: bool) -> None:
        if token_set.refresh_token:
            self._cookies.set_refresh_token(response, token_set.refresh_token)
        elif not rotate_only:
            logger.warning("IdP issued no refresh token; session cannot be refreshed")

        if token_set.id_token:
            self._cookies.set_id_token(response, token_set.id_token, max_age=token_set.expires_in)

    def _frontend_url(self, path: str, params: dict) -> str:
        return f"{self._settings.FRONTEND_URL}{path}?{urlencode(params)}"
