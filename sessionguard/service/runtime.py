from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.auth import (
    AccessTokenAuthenticator,
    BrowserSessionStore,
    SessionStore,
)
from sessionguard.service.cookies import CookieManager
from sessionguard.service.csrf import (
    CookieCsrfTokenRepository,
    CsrfGuard,
    StableCsrfTokenRepository,
)
from sessionguard.service.identity import IdentityProvider, OAuth2ClientProvider
from sessionguard.service.login import LoginFinalizer
from sessionguard.service.refresh import RefreshCoordinator
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.memory import MemoryBrowserSessionStore, MemorySessionStore
from sessionguard.storage.redis_cache import (
    RedisBrowserSessionStore,
    RedisSessionStore,
    verify_connection,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (
                    parsed.scheme,
                    netloc,
                    parsed.path,
                    parsed.params,
                    parsed.query,
                    parsed.fragment,
                )
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        identity_provider: Optional[IdentityProvider] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            profile=self.settings.app_profile,
        )

        self.sessions: SessionStore
        self.browser_sessions: BrowserSessionStore
        self.redis_enabled = False
        if not self.settings.use_memory_store:
            self.redis_enabled = self._init_redis()
        if not self.redis_enabled:
            self.sessions = MemorySessionStore(meta_ttl=self.settings.session_meta_ttl)
            self.browser_sessions = MemoryBrowserSessionStore(
                ttl=self.settings.browser_session_ttl
            )

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.token_audience,
        )
        self.cookies = CookieManager(self.settings)
        self.csrf = CsrfGuard(
            StableCsrfTokenRepository(CookieCsrfTokenRepository(self.settings))
        )
        self.identity_provider = identity_provider or OAuth2ClientProvider(self.settings)
        self.authenticator = AccessTokenAuthenticator(
            self.codec, self.sessions, idle_timeout=self.settings.idle_timeout
        )
        self.login = LoginFinalizer(
            self.codec,
            self.sessions,
            self.browser_sessions,
            self.cookies,
            access_ttl=self.settings.access_token_ttl,
        )
        self.refresh = RefreshCoordinator(
            self.codec,
            self.sessions,
            self.browser_sessions,
            self.cookies,
            self.identity_provider,
            access_ttl=self.settings.access_token_ttl,
            idp_timeout=self.settings.idp_timeout_seconds,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.redis_enabled,
            secure_cookies=self.settings.secure_cookies,
            idp_registration=self.identity_provider.registration_id,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            idle_timeout_minutes=self.settings.idle_timeout_minutes,
        )

    def _init_redis(self) -> bool:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                verify_connection(self.settings.redis_url)
                self.sessions = RedisSessionStore(
                    self.settings.redis_url, meta_ttl=self.settings.session_meta_ttl
                )
                self.browser_sessions = RedisBrowserSessionStore(
                    self.settings.redis_url,
                    ttl=self.settings.browser_session_ttl,
                    client=self.sessions.client,
                )
                return True
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for session records and browser sessions; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions live in this "
                "process only and do not survive restarts."
            ),
            mode=fallback_mode,
        )
        return False

    async def close(self) -> None:
        if self.redis_enabled:
            # both stores share one client
            await self.sessions.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *, identity_provider: Optional[IdentityProvider] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.redis_enabled:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, identity_provider=identity_provider)
        return runtime
