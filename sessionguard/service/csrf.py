from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import parse_qs

from starlette.requests import Request
from starlette.responses import Response

from sessionguard.config import Settings
from sessionguard.logging import get_logger

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass(frozen=True)
class CsrfToken:
    header_name: str
    parameter_name: str
    token: str

    def to_dict(self) -> dict:
        return {
            "headerName": self.header_name,
            "parameterName": self.parameter_name,
            "token": self.token,
        }


class CsrfTokenRepository(Protocol):
    def generate(self, request: Request) -> CsrfToken: ...

    def load(self, request: Request) -> Optional[CsrfToken]: ...

    def save(
        self, token: Optional[CsrfToken], request: Request, response: Response
    ) -> None: ...


class CookieCsrfTokenRepository:
    """Keeps the CSRF token in a script-readable cookie (double-submit)."""

    def __init__(self, settings: Settings) -> None:
        self.cookie_name = settings.csrf_cookie_name
        self.header_name = settings.csrf_header_name
        self.parameter_name = settings.csrf_parameter_name
        self.max_age = settings.csrf_cookie_max_age_seconds
        self.secure = settings.secure_cookies

    def _wrap(self, value: str) -> CsrfToken:
        return CsrfToken(self.header_name, self.parameter_name, value)

    def generate(self, request: Request) -> CsrfToken:
        return self._wrap(secrets.token_urlsafe(32))

    def load(self, request: Request) -> Optional[CsrfToken]:
        value = request.cookies.get(self.cookie_name)
        if not value:
            return None
        return self._wrap(value)

    def save(
        self, token: Optional[CsrfToken], request: Request, response: Response
    ) -> None:
        if token is None:
            response.delete_cookie(
                self.cookie_name, path="/", secure=self.secure, samesite="lax"
            )
            return
        response.set_cookie(
            self.cookie_name,
            token.token,
            max_age=self.max_age,
            path="/",
            secure=self.secure,
            httponly=False,
            samesite="lax",
        )


class StableCsrfTokenRepository:
    """Delegating repository whose ``save(None)`` never deletes an existing token.

    A request that simply did not reference the token must not log the SPA
    out of its CSRF state; the existing cookie is re-saved instead.
    """

    def __init__(self, delegate: CookieCsrfTokenRepository) -> None:
        self.delegate = delegate

    def generate(self, request: Request) -> CsrfToken:
        return self.delegate.generate(request)

    def load(self, request: Request) -> Optional[CsrfToken]:
        return self.delegate.load(request)

    def save(
        self, token: Optional[CsrfToken], request: Request, response: Response
    ) -> None:
        if token is None:
            existing = self.delegate.load(request)
            if existing is not None:
                self.delegate.save(existing, request, response)
            return
        self.delegate.save(token, request, response)


class DeferredCsrfToken:
    """Resolves the request's token on first use: existing cookie, else a new value."""

    def __init__(self, repository: CsrfTokenRepository, request: Request) -> None:
        self._repository = repository
        self._request = request
        self._token: Optional[CsrfToken] = None
        self.generated = False

    @property
    def resolved(self) -> bool:
        return self._token is not None

    def get(self) -> CsrfToken:
        if self._token is None:
            existing = self._repository.load(self._request)
            if existing is not None:
                self._token = existing
            else:
                self._token = self._repository.generate(self._request)
                self.generated = True
        return self._token


class CsrfGuard:
    """Double-submit verification plus token maintenance around each request."""

    def __init__(self, repository: StableCsrfTokenRepository) -> None:
        self.repository = repository

    @property
    def header_name(self) -> str:
        return self.repository.delegate.header_name

    @property
    def parameter_name(self) -> str:
        return self.repository.delegate.parameter_name

    def begin(self, request: Request) -> DeferredCsrfToken:
        deferred = DeferredCsrfToken(self.repository, request)
        request.state.csrf_token = deferred
        return deferred

    async def _presented_token(self, request: Request) -> Optional[str]:
        presented = request.headers.get(self.header_name) or request.query_params.get(
            self.parameter_name
        )
        if presented:
            return presented
        # fall back to an urlencoded form body
        content_type = request.headers.get("content-type", "").split(";", 1)[0]
        if content_type.strip().lower() != FORM_CONTENT_TYPE:
            return None
        body = await request.body()
        values = parse_qs(body.decode("utf-8", errors="replace")).get(self.parameter_name)
        return values[0] if values else None

    async def verify(self, request: Request) -> Optional[str]:
        """Return ``"missing"`` or ``"invalid"`` when an unsafe request fails the check."""
        if request.method.upper() in SAFE_METHODS:
            return None
        expected = self.repository.load(request)
        presented = await self._presented_token(request)
        if expected is None or not presented:
            logger.warning(
                "csrf_token_missing",
                path=request.url.path,
                has_cookie=expected is not None,
            )
            return "missing"
        if not hmac.compare_digest(expected.token.encode(), presented.encode()):
            logger.warning("csrf_token_invalid", path=request.url.path)
            return "invalid"
        return None

    def finalize(
        self, request: Request, response: Response, deferred: DeferredCsrfToken
    ) -> None:
        if deferred.resolved:
            token = deferred.get()
            self.repository.save(token, request, response)
            response.headers[token.header_name] = token.token
            return
        self.repository.save(None, request, response)
        existing = self.repository.load(request)
        if existing is not None:
            response.headers[existing.header_name] = existing.token
