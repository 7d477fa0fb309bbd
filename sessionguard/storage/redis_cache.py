from __future__ import annotations

import json
import time
from datetime import timedelta
from typing import Callable, List, Optional, Union

import redis.asyncio as aioredis
from redis import Redis

from sessionguard.logging import get_logger
from sessionguard.storage.models import BrowserSession, SessionCheck, SessionRecord

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "sess:"
USER_INDEX_PREFIX = "user:"
USER_INDEX_SUFFIX = ":sids"
BROWSER_SESSION_KEY_PREFIX = "bsess:"


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def user_index_key(user_id: str) -> str:
    return f"{USER_INDEX_PREFIX}{user_id}{USER_INDEX_SUFFIX}"


def _seconds(ttl: Union[int, float, timedelta]) -> int:
    if isinstance(ttl, timedelta):
        return max(1, int(ttl.total_seconds()))
    return max(1, int(ttl))


def _connect(redis_url: str, socket_timeout: float) -> aioredis.Redis:
    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


def verify_connection(redis_url: str) -> None:
    """Assert Redis connectivity before wiring Redis-backed stores."""
    # Short-lived synchronous client so the async pool is not bound to a
    # temporary event loop during startup checks.
    sync_client = Redis.from_url(redis_url, decode_responses=True)
    try:
        sync_client.ping()
    finally:
        sync_client.close()


class RedisSessionStore:
    """Session records in Redis with server-side Lua for every read-modify-write.

    Layout: hash ``sess:{sid}`` with ``userId``, ``ver`` and ``lastSeen`` (epoch
    seconds), and set ``user:{userId}:sids`` indexing a user's sessions. Both
    keys get the metadata TTL re-applied on each write, so an abandoned
    session disappears on its own.
    """

    # KEYS[1]=sess key; ARGV: now, ttl, index prefix, index suffix
    _TOUCH_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
  return 0
end
redis.call('HSET', key, 'lastSeen', ARGV[1])
redis.call('EXPIRE', key, ARGV[2])
local uid = redis.call('HGET', key, 'userId')
if uid then
  redis.call('EXPIRE', ARGV[3] .. uid .. ARGV[4], ARGV[2])
end
return 1
"""

    # KEYS[1]=sess key; ARGV: now, ttl, index prefix, index suffix
    _INCREMENT_SCRIPT = """
local key = KEYS[1]
local ver = redis.call('HINCRBY', key, 'ver', 1)
redis.call('HSET', key, 'lastSeen', ARGV[1])
redis.call('EXPIRE', key, ARGV[2])
local uid = redis.call('HGET', key, 'userId')
if uid then
  redis.call('EXPIRE', ARGV[3] .. uid .. ARGV[4], ARGV[2])
end
return ver
"""

    # KEYS[1]=sess key; ARGV: presented ver, now, idle seconds, ttl, index prefix, index suffix
    _CHECK_AND_TOUCH_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
  return 'not_found'
end
local data = redis.call('HMGET', key, 'ver', 'lastSeen', 'userId')
local ver = tonumber(data[1])
if ver == nil or ver ~= tonumber(ARGV[1]) then
  return 'version_mismatch'
end
local now = tonumber(ARGV[2])
local last = tonumber(data[2])
if last == nil then
  last = now
end
if now - last > tonumber(ARGV[3]) then
  return 'idle_timeout'
end
redis.call('HSET', key, 'lastSeen', now)
redis.call('EXPIRE', key, ARGV[4])
if data[3] then
  redis.call('EXPIRE', ARGV[5] .. data[3] .. ARGV[6], ARGV[4])
end
return 'ok'
"""

    def __init__(
        self,
        redis_url: str,
        *,
        meta_ttl: Union[int, timedelta] = timedelta(days=14),
        clock: Callable[[], float] = time.time,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client if client is not None else _connect(redis_url, socket_timeout)
        self._ttl = _seconds(meta_ttl)
        self._clock = clock
        self._touch = self.client.register_script(self._TOUCH_SCRIPT)
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
        self._check_and_touch = self.client.register_script(self._CHECK_AND_TOUCH_SCRIPT)

    def _now(self) -> int:
        return int(self._clock())

    def verify_connection(self) -> None:
        verify_connection(self.redis_url)

    async def create(self, user_id: str, session_id: str, version: int = 1) -> SessionRecord:
        now = self._now()
        key = session_key(session_id)
        index = user_index_key(user_id)
        pipe = self.client.pipeline()
        pipe.hset(key, mapping={"userId": user_id, "ver": int(version), "lastSeen": now})
        pipe.expire(key, self._ttl)
        pipe.sadd(index, session_id)
        pipe.expire(index, self._ttl)
        await pipe.execute()
        logger.info("session_created", session_id=session_id, user_id=user_id, version=version)
        return SessionRecord(session_id=session_id, user_id=user_id, version=int(version), last_seen=now)

    async def touch(self, session_id: str) -> None:
        await self._touch(
            keys=[session_key(session_id)],
            args=[self._now(), self._ttl, USER_INDEX_PREFIX, USER_INDEX_SUFFIX],
        )

    async def increment_version(self, session_id: str) -> int:
        version = await self._increment(
            keys=[session_key(session_id)],
            args=[self._now(), self._ttl, USER_INDEX_PREFIX, USER_INDEX_SUFFIX],
        )
        logger.info("session_version_incremented", session_id=session_id, version=int(version))
        return int(version)

    async def get_version(self, session_id: str) -> Optional[int]:
        raw = await self.client.hget(session_key(session_id), "ver")
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    async def check_and_touch(
        self,
        session_id: str,
        presented_version: int,
        idle_timeout: Union[int, timedelta],
    ) -> SessionCheck:
        idle_seconds = (
            int(idle_timeout.total_seconds())
            if isinstance(idle_timeout, timedelta)
            else int(idle_timeout)
        )
        result = await self._check_and_touch(
            keys=[session_key(session_id)],
            args=[
                int(presented_version),
                self._now(),
                idle_seconds,
                self._ttl,
                USER_INDEX_PREFIX,
                USER_INDEX_SUFFIX,
            ],
        )
        return SessionCheck(result)

    async def validate_and_touch(
        self,
        session_id: str,
        presented_version: int,
        idle_timeout: Union[int, timedelta],
    ) -> bool:
        check = await self.check_and_touch(session_id, presented_version, idle_timeout)
        return check is SessionCheck.OK

    async def get_record(self, session_id: str) -> Optional[SessionRecord]:
        data = await self.client.hgetall(session_key(session_id))
        if not data:
            return None
        try:
            version = int(data.get("ver", 0))
            last_seen = int(data["lastSeen"]) if data.get("lastSeen") else self._now()
        except (TypeError, ValueError):
            logger.warning("session_record_corrupt", session_id=session_id)
            return None
        return SessionRecord(
            session_id=session_id,
            user_id=data.get("userId", ""),
            version=version,
            last_seen=last_seen,
        )

    async def list_user_sessions(self, user_id: str) -> List[str]:
        members = await self.client.smembers(user_index_key(user_id))
        return sorted(members or [])

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class RedisBrowserSessionStore:
    """Browser-session contexts stored as JSON under ``bsess:{id}`` with a sliding TTL."""

    def __init__(
        self,
        redis_url: str,
        *,
        ttl: Union[int, timedelta] = timedelta(minutes=120),
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client if client is not None else _connect(redis_url, socket_timeout)
        self._ttl = _seconds(ttl)

    @staticmethod
    def _key(browser_session_id: str) -> str:
        return f"{BROWSER_SESSION_KEY_PREFIX}{browser_session_id}"

    async def load(self, browser_session_id: str) -> Optional[BrowserSession]:
        key = self._key(browser_session_id)
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.expire(key, self._ttl)
        raw, _ = await pipe.execute()
        if raw is None:
            return None
        try:
            return BrowserSession.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("browser_session_corrupt", browser_session_id=browser_session_id)
            await self.client.delete(key)
            return None

    async def save(self, browser_session: BrowserSession) -> None:
        await self.client.set(
            self._key(browser_session.id),
            json.dumps(browser_session.to_dict()),
            ex=self._ttl,
        )

    async def delete(self, browser_session_id: str) -> None:
        await self.client.delete(self._key(browser_session_id))

    async def close(self) -> None:
        await self.client.aclose()
