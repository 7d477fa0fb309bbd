from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessionguard.api.error_handling import (
    error_response,
    register_exception_handlers,
    service_error_response,
)
from sessionguard.api.routes import router
from sessionguard.config import get_settings
from sessionguard.logging import get_logger, set_correlation_id
from sessionguard.service.auth import is_refresh_path
from sessionguard.service.cookies import has_cookie
from sessionguard.service.errors import ForbiddenError
from sessionguard.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so configuration errors surface early."""
    runtime = get_runtime()
    logger.info("startup_complete", redis_enabled=runtime.redis_enabled)

    yield

    await get_runtime().close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="sessionguard", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        get_settings().csrf_header_name,
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", get_settings().csrf_header_name],
    max_age=3600,
)


# Middlewares declared later wrap those declared earlier, so the request
# passes correlation id -> security headers -> CSRF -> authentication.


@app.middleware("http")
async def authenticate_access_token(request: Request, call_next):
    """Establish ``request.state.identity`` from the access-token cookie.

    Cookie clean-up decided here is applied after the handler, and only for
    cookies the handler did not write itself.
    """
    if getattr(request.state, "identity", None) is not None:
        return await call_next(request)

    runtime = get_runtime()
    token = request.cookies.get(runtime.cookies.access_cookie_name)
    try:
        outcome = await runtime.authenticator.authenticate(
            token, is_refresh_path=is_refresh_path(request.url.path)
        )
    except (RedisConnectionError, RedisTimeoutError) as exc:
        logger.error(
            "session_store_unavailable",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(503, "session store unavailable", code="service_unavailable")

    request.state.identity = outcome.identity

    response = await call_next(request)

    if outcome.clear_cookies:
        if not has_cookie(response, runtime.cookies.access_cookie_name):
            runtime.cookies.clear_access_cookie(response)
        if not has_cookie(response, runtime.cookies.ui_cookie_name):
            runtime.cookies.clear_ui_hint_cookie(response)
    return response


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    guard = get_runtime().csrf
    deferred = guard.begin(request)
    failure = await guard.verify(request)
    if failure:
        return service_error_response(
            request, ForbiddenError(f"{failure} CSRF token", detail={"reason": failure})
        )
    response = await call_next(request)
    guard.finalize(request, response, deferred)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry Set-Cookie; keep them out of shared caches
    response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with a correlation id for structured logs.

    Taken from ``X-Request-ID`` when the client sends one, otherwise a new
    UUID; echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    return {"status": "ok", "version": __version__, "redis": runtime.redis_enabled}
