from __future__ import annotations

import copy
import threading
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from sessionguard.logging import get_logger
from sessionguard.storage.models import BrowserSession, SessionCheck, SessionRecord


def _seconds(value: Union[int, float, timedelta]) -> int:
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    return int(value)


class MemorySessionStore:
    """In-process session store for tests and local development.

    Mirrors the Redis layout: one record per session plus a per-user index,
    each with an absolute expiry that is pushed out on every write and
    checked lazily on read. A single lock covers each read-modify-write so
    concurrent increments never lose an update.
    """

    def __init__(
        self,
        *,
        meta_ttl: Union[int, timedelta] = timedelta(days=14),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.logger = get_logger(__name__)
        self._ttl = _seconds(meta_ttl)
        self._clock = clock
        self._lock = threading.Lock()
        # sid -> (user_id or None, version, last_seen or None, expires_at)
        self._records: Dict[str, Tuple[Optional[str], int, Optional[int], int]] = {}
        self._index: Dict[str, Tuple[Set[str], int]] = {}

    def _now(self) -> int:
        return int(self._clock())

    def _live(self, session_id: str, now: int):
        entry = self._records.get(session_id)
        if entry is None:
            return None
        if entry[3] <= now:
            del self._records[session_id]
            return None
        return entry

    def _refresh_index(self, user_id: Optional[str], now: int) -> None:
        if not user_id:
            return
        members, expires_at = self._index.get(user_id, (set(), 0))
        if expires_at and expires_at <= now:
            members = set()
        self._index[user_id] = (members, now + self._ttl)

    async def create(self, user_id: str, session_id: str, version: int = 1) -> SessionRecord:
        with self._lock:
            now = self._now()
            self._records[session_id] = (user_id, int(version), now, now + self._ttl)
            self._refresh_index(user_id, now)
            self._index[user_id][0].add(session_id)
        self.logger.info(
            "session_created", session_id=session_id, user_id=user_id, version=version
        )
        return SessionRecord(
            session_id=session_id, user_id=user_id, version=int(version), last_seen=now
        )

    async def touch(self, session_id: str) -> None:
        with self._lock:
            now = self._now()
            entry = self._live(session_id, now)
            if entry is None:
                return
            user_id, version, _, _ = entry
            self._records[session_id] = (user_id, version, now, now + self._ttl)
            self._refresh_index(user_id, now)

    async def increment_version(self, session_id: str) -> int:
        with self._lock:
            now = self._now()
            entry = self._live(session_id, now)
            if entry is None:
                user_id, version = None, 0
            else:
                user_id, version, _, _ = entry
            version += 1
            self._records[session_id] = (user_id, version, now, now + self._ttl)
            self._refresh_index(user_id, now)
        self.logger.info("session_version_incremented", session_id=session_id, version=version)
        return version

    async def get_version(self, session_id: str) -> Optional[int]:
        with self._lock:
            entry = self._live(session_id, self._now())
            return entry[1] if entry is not None else None

    async def check_and_touch(
        self,
        session_id: str,
        presented_version: int,
        idle_timeout: Union[int, timedelta],
    ) -> SessionCheck:
        idle_seconds = _seconds(idle_timeout)
        with self._lock:
            now = self._now()
            entry = self._live(session_id, now)
            if entry is None:
                return SessionCheck.NOT_FOUND
            user_id, version, last_seen, _ = entry
            if version != int(presented_version):
                return SessionCheck.VERSION_MISMATCH
            last = last_seen if last_seen is not None else now
            if now - last > idle_seconds:
                return SessionCheck.IDLE_TIMEOUT
            self._records[session_id] = (user_id, version, now, now + self._ttl)
            self._refresh_index(user_id, now)
            return SessionCheck.OK

    async def validate_and_touch(
        self,
        session_id: str,
        presented_version: int,
        idle_timeout: Union[int, timedelta],
    ) -> bool:
        check = await self.check_and_touch(session_id, presented_version, idle_timeout)
        return check is SessionCheck.OK

    async def get_record(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            now = self._now()
            entry = self._live(session_id, now)
            if entry is None:
                return None
            user_id, version, last_seen, _ = entry
            return SessionRecord(
                session_id=session_id,
                user_id=user_id or "",
                version=version,
                last_seen=last_seen if last_seen is not None else now,
            )

    async def list_user_sessions(self, user_id: str) -> List[str]:
        with self._lock:
            members, expires_at = self._index.get(user_id, (set(), 0))
            if expires_at <= self._now():
                self._index.pop(user_id, None)
                return []
            return sorted(members)

    def set_last_seen(self, session_id: str, last_seen: Optional[int]) -> None:
        """Overwrite the stored activity timestamp; used to stage idle scenarios."""
        with self._lock:
            entry = self._records.get(session_id)
            if entry is None:
                raise KeyError(session_id)
            user_id, version, _, expires_at = entry
            self._records[session_id] = (user_id, version, last_seen, expires_at)

    async def close(self) -> None:
        return None


class MemoryBrowserSessionStore:
    """Browser-session contexts kept in process memory with a sliding TTL."""

    def __init__(
        self,
        *,
        ttl: Union[int, timedelta] = timedelta(minutes=120),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = _seconds(ttl)
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Tuple[BrowserSession, float]] = {}

    async def load(self, browser_session_id: str) -> Optional[BrowserSession]:
        with self._lock:
            now = self._clock()
            entry = self._sessions.get(browser_session_id)
            if entry is None:
                return None
            browser_session, expires_at = entry
            if expires_at <= now:
                del self._sessions[browser_session_id]
                return None
            self._sessions[browser_session_id] = (browser_session, now + self._ttl)
            # callers mutate the returned object; changes land only on save()
            return copy.deepcopy(browser_session)

    async def save(self, browser_session: BrowserSession) -> None:
        with self._lock:
            self._sessions[browser_session.id] = (
                copy.deepcopy(browser_session),
                self._clock() + self._ttl,
            )

    async def delete(self, browser_session_id: str) -> None:
        with self._lock:
            self._sessions.pop(browser_session_id, None)

    async def close(self) -> None:
        return None
