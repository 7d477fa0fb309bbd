from __future__ import annotations

import hmac
import secrets
from typing import Optional

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import RedirectResponse

from sessionguard.api.schemas import CsrfTokenResponse, Envelope, MeResponse
from sessionguard.logging import get_logger
from sessionguard.service.errors import AuthenticationError, ServiceUnavailableError
from sessionguard.service.runtime import get_runtime
from sessionguard.storage.models import BrowserSession

logger = get_logger(__name__)

router = APIRouter()


async def _load_browser_session(request: Request) -> Optional[BrowserSession]:
    runtime = get_runtime()
    browser_session_id = request.cookies.get(runtime.cookies.browser_session_cookie_name)
    if not browser_session_id:
        return None
    return await runtime.browser_sessions.load(browser_session_id)


def _ensure_registration(registration_id: str) -> None:
    runtime = get_runtime()
    if registration_id != runtime.identity_provider.registration_id:
        raise AuthenticationError(
            "unknown identity provider registration",
            detail={"registration_id": registration_id},
        )


@router.get("/oauth2/authorization/{registration_id}", tags=["auth"])
async def start_login(registration_id: str, request: Request):
    """Redirect the browser to the identity provider with a fresh ``state``."""
    _ensure_registration(registration_id)
    runtime = get_runtime()
    browser_session = await _load_browser_session(request) or BrowserSession()
    state = secrets.token_urlsafe(32)
    try:
        location = runtime.identity_provider.authorization_url(state)
    except ValueError as exc:
        raise ServiceUnavailableError(str(exc)) from exc
    browser_session.oauth_state = state
    await runtime.browser_sessions.save(browser_session)

    response = RedirectResponse(location, status_code=302)
    runtime.cookies.set_browser_session_cookie(response, browser_session.id)
    logger.info("login_started", provider=registration_id, browser_session_id=browser_session.id)
    return response


@router.get("/login/oauth2/code/{registration_id}", tags=["auth"])
async def login_callback(
    registration_id: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    _ensure_registration(registration_id)
    runtime = get_runtime()
    if error:
        logger.warning("login_provider_error", provider=registration_id, error=error)
        raise AuthenticationError("identity provider denied the login")
    browser_session = await _load_browser_session(request)
    expected_state = browser_session.oauth_state if browser_session else None
    if (
        not code
        or not state
        or not expected_state
        or not hmac.compare_digest(expected_state.encode(), state.encode())
    ):
        logger.warning("login_state_mismatch", provider=registration_id)
        raise AuthenticationError("invalid login state")

    authentication = await runtime.identity_provider.exchange_code(code)
    if authentication is None:
        raise AuthenticationError("identity provider login failed")

    response = RedirectResponse(runtime.settings.post_login_redirect, status_code=302)
    try:
        await runtime.login.finalize(authentication, browser_session, response)
    except ValueError as exc:
        raise AuthenticationError(str(exc)) from exc
    return response


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(request: Request):
    runtime = get_runtime()
    session_id: Optional[str] = None
    token = request.cookies.get(runtime.cookies.access_cookie_name)
    if token:
        verification = runtime.codec.verify(token, allow_expired=True)
        if verification.claims is not None:
            session_id = verification.claims.session_id
    browser_session = await _load_browser_session(request)
    if session_id is None and browser_session is not None:
        session_id = browser_session.session_id
    if session_id and await runtime.sessions.get_version(session_id) is not None:
        await runtime.sessions.increment_version(session_id)
        logger.info("logout", session_id=session_id)
    elif session_id:
        logger.info("logout_session_missing", session_id=session_id)

    response = Response(status_code=204)
    runtime.cookies.clear_auth_cookies(response)
    if browser_session is not None:
        await runtime.browser_sessions.delete(browser_session.id)
        runtime.cookies.clear_browser_session_cookie(response)
    return response


@router.post("/auth/refresh", status_code=204, tags=["auth"])
async def refresh(request: Request):
    runtime = get_runtime()
    browser_session = await _load_browser_session(request)
    response = Response(status_code=204)
    outcome = await runtime.refresh.refresh(browser_session, response)
    if not outcome.ok:
        response.status_code = 401
        response.headers["content-length"] = "0"
    return response


@router.get("/csrf", response_model=Envelope, tags=["auth"])
async def csrf(request: Request):
    deferred = getattr(request.state, "csrf_token", None)
    if deferred is None:
        deferred = get_runtime().csrf.begin(request)
    token = deferred.get()
    body = CsrfTokenResponse(
        header_name=token.header_name,
        parameter_name=token.parameter_name,
        token=token.token,
    )
    return Envelope(status="ok", data=body.model_dump(by_alias=True))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(request: Request):
    identity = getattr(request.state, "identity", None)
    return Envelope(status="ok", data=MeResponse(name=identity).model_dump())
