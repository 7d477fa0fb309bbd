from __future__ import annotations

import enum
from typing import Optional


class AuthFailure(str, enum.Enum):
    """Why a presented credential could not establish an identity.

    Token-level failures are detected from the token alone and never touch
    the session store. Session-level failures mean an authentic token named a
    session that is gone, stale or idle; those revoke the session.
    """

    TOKEN_MALFORMED = "token_malformed"
    TOKEN_EXPIRED = "token_expired"
    SIGNATURE_INVALID = "signature_invalid"
    SESSION_NOT_FOUND = "session_not_found"
    VERSION_MISMATCH = "version_mismatch"
    IDLE_TIMEOUT_EXCEEDED = "idle_timeout_exceeded"
    IDP_AUTHORIZATION_FAILED = "idp_authorization_failed"

    @property
    def is_session_level(self) -> bool:
        return self in _SESSION_LEVEL

    @property
    def is_token_level(self) -> bool:
        return self in _TOKEN_LEVEL


_TOKEN_LEVEL = frozenset(
    {AuthFailure.TOKEN_MALFORMED, AuthFailure.TOKEN_EXPIRED, AuthFailure.SIGNATURE_INVALID}
)
_SESSION_LEVEL = frozenset(
    {
        AuthFailure.SESSION_NOT_FOUND,
        AuthFailure.VERSION_MISMATCH,
        AuthFailure.IDLE_TIMEOUT_EXCEEDED,
    }
)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that ends up in the JSON error envelope:
    - unauthorized (401)
    - forbidden (403)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ServiceUnavailableError(ServiceError):
    """A backing store or the identity provider is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "AuthFailure",
    "ServiceError",
    "AuthenticationError",
    "ForbiddenError",
    "ServiceUnavailableError",
]
