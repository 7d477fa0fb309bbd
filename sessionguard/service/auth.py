from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Protocol, Union

from sessionguard.logging import get_logger
from sessionguard.service.errors import AuthFailure
from sessionguard.service.tokens import AccessClaims, TokenCodec
from sessionguard.storage.models import BrowserSession, SessionCheck, SessionRecord

logger = get_logger(__name__)

REFRESH_PATH = "/auth/refresh"

_CHECK_FAILURES = {
    SessionCheck.NOT_FOUND: AuthFailure.SESSION_NOT_FOUND,
    SessionCheck.VERSION_MISMATCH: AuthFailure.VERSION_MISMATCH,
    SessionCheck.IDLE_TIMEOUT: AuthFailure.IDLE_TIMEOUT_EXCEEDED,
}


class SessionStore(Protocol):
    async def create(self, user_id: str, session_id: str, version: int = 1) -> SessionRecord: ...

    async def touch(self, session_id: str) -> None: ...

    async def increment_version(self, session_id: str) -> int: ...

    async def get_version(self, session_id: str) -> Optional[int]: ...

    async def check_and_touch(
        self,
        session_id: str,
        presented_version: int,
        idle_timeout: Union[int, timedelta],
    ) -> SessionCheck: ...

    async def validate_and_touch(
        self,
        session_id: str,
        presented_version: int,
        idle_timeout: Union[int, timedelta],
    ) -> bool: ...

    async def get_record(self, session_id: str) -> Optional[SessionRecord]: ...

    async def list_user_sessions(self, user_id: str) -> List[str]: ...


class BrowserSessionStore(Protocol):
    async def load(self, browser_session_id: str) -> Optional[BrowserSession]: ...

    async def save(self, browser_session: BrowserSession) -> None: ...

    async def delete(self, browser_session_id: str) -> None: ...


def is_refresh_path(path: str) -> bool:
    return path == REFRESH_PATH or path.endswith(REFRESH_PATH)


@dataclass(frozen=True)
class AuthOutcome:
    identity: Optional[str] = None
    claims: Optional[AccessClaims] = None
    failure: Optional[AuthFailure] = None
    clear_cookies: bool = False

    @property
    def authenticated(self) -> bool:
        return self.identity is not None


class AccessTokenAuthenticator:
    """Per-request decision on the access-token cookie.

    No token: anonymous, nothing else happens. A token that fails on its own
    (malformed, expired, bad signature) only clears cookies, as does an
    authentic token whose session is gone. One whose session is stale or idle
    revokes that session by bumping its version, so every other token minted
    for it dies too. The refresh endpoint is exempt from both clean-ups;
    the refresh coordinator makes that call itself.
    """

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionStore,
        *,
        idle_timeout: Union[int, timedelta],
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.idle_timeout = idle_timeout

    async def authenticate(
        self, token: Optional[str], *, is_refresh_path: bool = False
    ) -> AuthOutcome:
        if not token:
            return AuthOutcome()

        verification = self.codec.verify(token)
        if verification.claims is None:
            logger.info(
                "access_token_rejected",
                failure=verification.failure.value if verification.failure else None,
                refresh_path=is_refresh_path,
            )
            return AuthOutcome(
                failure=verification.failure, clear_cookies=not is_refresh_path
            )

        claims = verification.claims
        check = await self.sessions.check_and_touch(
            claims.session_id, claims.session_version, self.idle_timeout
        )
        if check is SessionCheck.OK:
            return AuthOutcome(identity=claims.subject, claims=claims)

        failure = _CHECK_FAILURES[check]
        if is_refresh_path:
            logger.info(
                "session_check_deferred_to_refresh",
                session_id=claims.session_id,
                failure=failure.value,
            )
            return AuthOutcome(claims=claims, failure=failure)

        if check is SessionCheck.NOT_FOUND:
            # nothing left to revoke; bumping would recreate the record at v1
            logger.warning(
                "session_missing",
                session_id=claims.session_id,
                presented_version=claims.session_version,
            )
            return AuthOutcome(claims=claims, failure=failure, clear_cookies=True)

        new_version = await self.sessions.increment_version(claims.session_id)
        logger.warning(
            "session_invalidated",
            session_id=claims.session_id,
            presented_version=claims.session_version,
            new_version=new_version,
            failure=failure.value,
        )
        return AuthOutcome(claims=claims, failure=failure, clear_cookies=True)


async def revoke_user_sessions(sessions: SessionStore, user_id: str) -> Dict[str, int]:
    """Bump the version of every session indexed for ``user_id``.

    Returns the new version per session id; sessions that already expired
    out of the store are skipped rather than recreated.
    """
    revoked: Dict[str, int] = {}
    for session_id in await sessions.list_user_sessions(user_id):
        if await sessions.get_version(session_id) is None:
            continue
        revoked[session_id] = await sessions.increment_version(session_id)
    logger.info("user_sessions_revoked", user_id=user_id, count=len(revoked))
    return revoked
