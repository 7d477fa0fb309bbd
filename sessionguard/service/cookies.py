from __future__ import annotations

import base64
import json
from datetime import timedelta
from typing import Union

from starlette.responses import Response

from sessionguard.config import Settings

_SAMESITE = "lax"
_PATH = "/"


def _seconds(ttl: Union[int, float, timedelta]) -> int:
    if isinstance(ttl, timedelta):
        return max(0, int(ttl.total_seconds()))
    return max(0, int(ttl))


def has_cookie(response: Response, name: str) -> bool:
    """True when ``response`` already carries a Set-Cookie for ``name``."""
    prefix = f"{name}=".encode("latin-1")
    return any(
        key == b"set-cookie" and value.startswith(prefix)
        for key, value in response.raw_headers
    )


class CookieManager:
    """Writes and clears the access-token and UI-hint cookies.

    The access cookie is HttpOnly; the UI hint is readable by client script so
    the SPA can render the signed-in user without calling the API. Both share
    the SameSite and Secure policy resolved once from settings.
    """

    def __init__(self, settings: Settings) -> None:
        self.access_cookie_name = settings.access_cookie_name
        self.ui_cookie_name = settings.ui_cookie_name
        self.browser_session_cookie_name = settings.browser_session_cookie_name
        self.browser_session_ttl = settings.browser_session_ttl
        self.secure = settings.secure_cookies

    def _set(self, response: Response, name: str, value: str, ttl, *, httponly: bool) -> None:
        response.set_cookie(
            name,
            value,
            max_age=_seconds(ttl),
            path=_PATH,
            secure=self.secure,
            httponly=httponly,
            samesite=_SAMESITE,
        )

    def _clear(self, response: Response, name: str, *, httponly: bool) -> None:
        response.delete_cookie(
            name,
            path=_PATH,
            secure=self.secure,
            httponly=httponly,
            samesite=_SAMESITE,
        )

    def set_access_cookie(
        self, response: Response, token: str, ttl: Union[int, timedelta]
    ) -> None:
        self._set(response, self.access_cookie_name, token, ttl, httponly=True)

    def clear_access_cookie(self, response: Response) -> None:
        self._clear(response, self.access_cookie_name, httponly=True)

    def set_ui_hint_cookie(
        self, response: Response, payload: str, ttl: Union[int, timedelta]
    ) -> None:
        self._set(response, self.ui_cookie_name, payload, ttl, httponly=False)

    def clear_ui_hint_cookie(self, response: Response) -> None:
        self._clear(response, self.ui_cookie_name, httponly=False)

    def clear_auth_cookies(self, response: Response) -> None:
        self.clear_access_cookie(response)
        self.clear_ui_hint_cookie(response)

    def set_browser_session_cookie(self, response: Response, browser_session_id: str) -> None:
        self._set(
            response,
            self.browser_session_cookie_name,
            browser_session_id,
            self.browser_session_ttl,
            httponly=True,
        )

    def clear_browser_session_cookie(self, response: Response) -> None:
        self._clear(response, self.browser_session_cookie_name, httponly=True)

    @staticmethod
    def build_ui_hint(subject: str, display_name: str, expires_at: int) -> str:
        payload = {"subject": subject, "displayName": display_name, "exp": int(expires_at)}
        raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    @staticmethod
    def parse_ui_hint(value: str) -> dict:
        padding = "=" * ((4 - len(value) % 4) % 4)
        return json.loads(base64.urlsafe_b64decode(value + padding))

    has_cookie = staticmethod(has_cookie)
