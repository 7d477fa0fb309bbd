from __future__ import annotations

import time
import uuid
from datetime import timedelta
from typing import Callable, Optional

from starlette.responses import Response

from sessionguard.logging import get_logger
from sessionguard.service.auth import BrowserSessionStore, SessionStore
from sessionguard.service.cookies import CookieManager
from sessionguard.service.identity import IdpAuthentication, resolve_identity
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.models import BrowserSession

logger = get_logger(__name__)

INITIAL_SESSION_VERSION = 1


class LoginFinalizer:
    """Turns a successful provider login into a session, a token and cookies."""

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionStore,
        browser_sessions: BrowserSessionStore,
        cookies: CookieManager,
        *,
        access_ttl: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.browser_sessions = browser_sessions
        self.cookies = cookies
        self.access_ttl = access_ttl
        self._clock = clock

    async def finalize(
        self,
        authentication: IdpAuthentication,
        browser_session: Optional[BrowserSession],
        response: Response,
    ) -> BrowserSession:
        identity = resolve_identity(authentication.principal)
        session_id = str(uuid.uuid4())
        version = INITIAL_SESSION_VERSION

        await self.sessions.create(identity.user_id, session_id, version)

        token = self.codec.issue(identity.user_id, session_id, version, self.access_ttl)
        expires_at = int(self._clock() + self.access_ttl.total_seconds())
        self.cookies.set_access_cookie(response, token, self.access_ttl)
        self.cookies.set_ui_hint_cookie(
            response,
            CookieManager.build_ui_hint(identity.user_id, identity.display_name, expires_at),
            self.access_ttl,
        )

        # A fresh browser-session id defeats fixation of a pre-login cookie
        context = browser_session or BrowserSession()
        previous_id = context.rotate_id()
        if browser_session is not None:
            await self.browser_sessions.delete(previous_id)
        context.session_id = session_id
        context.version = version
        context.user_id = identity.user_id
        context.display_name = identity.display_name
        context.principal_name = identity.principal_name
        context.grant = authentication.grant
        context.oauth_state = None
        await self.browser_sessions.save(context)
        self.cookies.set_browser_session_cookie(response, context.id)

        logger.info(
            "login_finalized",
            session_id=session_id,
            user_id=identity.user_id,
            browser_session_id=context.id,
        )
        return context
