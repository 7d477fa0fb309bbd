from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from starlette.responses import Response

from sessionguard.logging import get_logger
from sessionguard.service.auth import BrowserSessionStore, SessionStore
from sessionguard.service.cookies import CookieManager
from sessionguard.service.errors import AuthFailure
from sessionguard.service.identity import IdentityProvider
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.models import BrowserSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class RefreshOutcome:
    ok: bool
    failure: Optional[AuthFailure] = None


class RefreshCoordinator:
    """Re-issues an access token from the browser-session context.

    Preconditions are checked in order and the first one that fails ends the
    attempt: a login context must exist, its version must still be current in
    the session store, and the identity provider must still authorize the
    grant within ``idp_timeout`` seconds. Failure clears both auth cookies but
    never bumps the session version, so a transient provider error does not
    sign out other tabs.
    """

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionStore,
        browser_sessions: BrowserSessionStore,
        cookies: CookieManager,
        identity_provider: IdentityProvider,
        *,
        access_ttl: timedelta,
        idp_timeout: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.browser_sessions = browser_sessions
        self.cookies = cookies
        self.identity_provider = identity_provider
        self.access_ttl = access_ttl
        self.idp_timeout = idp_timeout
        self._clock = clock

    def _fail(self, response: Response, failure: AuthFailure, **context) -> RefreshOutcome:
        self.cookies.clear_auth_cookies(response)
        logger.info("refresh_denied", failure=failure.value, **context)
        return RefreshOutcome(ok=False, failure=failure)

    async def refresh(
        self, browser_session: Optional[BrowserSession], response: Response
    ) -> RefreshOutcome:
        if browser_session is None or not browser_session.is_authenticated:
            return self._fail(response, AuthFailure.SESSION_NOT_FOUND)

        session_id = browser_session.session_id
        stored_version = await self.sessions.get_version(session_id)
        if stored_version is None:
            return self._fail(response, AuthFailure.SESSION_NOT_FOUND, session_id=session_id)
        if stored_version != browser_session.version:
            return self._fail(
                response,
                AuthFailure.VERSION_MISMATCH,
                session_id=session_id,
                stored_version=stored_version,
                context_version=browser_session.version,
            )

        if browser_session.grant is None:
            return self._fail(
                response, AuthFailure.IDP_AUTHORIZATION_FAILED, session_id=session_id
            )
        try:
            grant = await asyncio.wait_for(
                self.identity_provider.authorize(browser_session.grant),
                timeout=self.idp_timeout,
            )
        except asyncio.TimeoutError:
            return self._fail(
                response,
                AuthFailure.IDP_AUTHORIZATION_FAILED,
                session_id=session_id,
                reason="timeout",
            )
        if grant is None or not grant.access_token:
            return self._fail(
                response, AuthFailure.IDP_AUTHORIZATION_FAILED, session_id=session_id
            )

        if grant != browser_session.grant:
            browser_session.grant = grant
            await self.browser_sessions.save(browser_session)
        await self.sessions.touch(session_id)

        subject = browser_session.user_id or browser_session.principal_name or session_id
        token = self.codec.issue(subject, session_id, browser_session.version, self.access_ttl)
        expires_at = int(self._clock() + self.access_ttl.total_seconds())
        self.cookies.set_access_cookie(response, token, self.access_ttl)
        self.cookies.set_ui_hint_cookie(
            response,
            CookieManager.build_ui_hint(
                subject, browser_session.display_name or subject, expires_at
            ),
            self.access_ttl,
        )
        logger.info("refresh_succeeded", session_id=session_id)
        return RefreshOutcome(ok=True)
