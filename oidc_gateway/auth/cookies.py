"""
Cookie-backed session artifacts.

The gateway keeps no server-side session table: a browser session is the
csrf_state, refresh_token and id_token cookies. This module is the only place
that knows their names and flags.
"""

from typing import Optional

from fastapi import Request, Response

from ..config import Settings

CSRF_STATE_COOKIE = "csrf_state"
REFRESH_TOKEN_COOKIE = "refresh_token"
ID_TOKEN_COOKIE = "id_token"

COOKIE_PATH = "/"


class SessionCookieStore:
    """
    Read/write helpers for the three session cookies.

    All cookies are httpOnly, scoped to this origin at path "/", and Secure
    in production. csrf_state is SameSite=Lax because it must survive the
    top-level redirect back from the IdP; the token cookies are Strict.
    """

    def __init__(self, settings: Settings):
        self._secure = settings.cookie_secure
        self._csrf_max_age = settings.CSRF_STATE_TTL_SECONDS
        self._refresh_max_age = settings.REFRESH_COOKIE_MAX_AGE_SECONDS

    # csrf_state

    def read_csrf_state(self, request: Request) -> Optional[str]:
        return request.cookies.get(CSRF_STATE_COOKIE) or None

    def set_csrf_state(self, response: Response, value: str) -> None:
        self._set(response, CSRF_STATE_COOKIE, value, self._csrf_max_age, "lax")

    def clear_csrf_state(self, response: Response) -> None:
        self._clear(response, CSRF_STATE_COOKIE, "lax")

    # refresh_token

    def read_refresh_token(self, request: Request) -> Optional[str]:
        return request.cookies.get(REFRESH_TOKEN_COOKIE) or None

    def set_refresh_token(self, response: Response, value: str) -> None:
        self._set(response, REFRESH_TOKEN_COOKIE, value, self._refresh_max_age, "strict")

    # id_token

    def set_id_token(self, response: Response, value: str, max_age: int) -> None:
        self._set(response, ID_TOKEN_COOKIE, value, max_age, "strict")

    def clear_session(self, response: Response) -> None:
        """Drop both token cookies. Safe to call when they are absent."""
        self._clear(response, REFRESH_TOKEN_COOKIE, "strict")
        self._clear(response, ID_TOKEN_COOKIE, "strict")

    # helpers

    def _set(self, response: Response, key: str, value: str, max_age: int, samesite: str) -> None:
        response.set_cookie(
            key=key,
            value=value,
            max_age=max_age,
            path=COOKIE_PATH,
            httponly=True,
            secure=self._secure,
            samesite=samesite,
        )

    def _clear(self, response: Response, key: str, samesite: str) -> None:
        response.delete_cookie(
            key=key,
            path=COOKIE_PATH,
            httponly=True,
            secure=self._secure,
            samesite=samesite,
        )
