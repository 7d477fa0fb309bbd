from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Union

from sessionguard.logging import get_logger
from sessionguard.service.errors import AuthFailure

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_HEADER = {"alg": _ALGORITHM, "typ": "JWT"}


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    session_id: str
    session_version: int
    issued_at: int
    expires_at: int
    not_before: int
    token_id: str


@dataclass(frozen=True)
class TokenVerification:
    claims: Optional[AccessClaims] = None
    failure: Optional[AuthFailure] = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class TokenCodec:
    """Issues and verifies HS256-signed access tokens.

    The token binds a subject to a server-side session (``sid``) at a specific
    version (``ver``). Verification never consults the session store; it only
    answers whether the token is authentic and inside its validity window.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def _sign(self, signing_input: str) -> bytes:
        return hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()

    def issue(
        self,
        subject: str,
        session_id: str,
        session_version: int,
        ttl: Union[int, float, timedelta],
    ) -> str:
        ttl_seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
        now = int(self._clock())
        # whole seconds, rounded up so a positive ttl always outlives iat;
        # a non-positive ttl yields a token that is already expired
        lifetime = math.ceil(ttl_seconds) if ttl_seconds > 0 else int(ttl_seconds)
        payload = {
            "sub": subject,
            "sid": session_id,
            "ver": int(session_version),
            "iat": now,
            "nbf": now,
            "exp": now + lifetime,
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_encode_segment(self._sign(signing_input))}"

    def verify(self, token: str, *, allow_expired: bool = False) -> TokenVerification:
        """Check structure, algorithm, signature, claims and validity window.

        ``allow_expired`` skips only the ``exp`` comparison so logout can still
        revoke the session named by an authentic but stale token.
        """
        if not isinstance(token, str):
            return TokenVerification(failure=AuthFailure.TOKEN_MALFORMED)
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            return TokenVerification(failure=AuthFailure.TOKEN_MALFORMED)
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return TokenVerification(failure=AuthFailure.TOKEN_MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return TokenVerification(failure=AuthFailure.TOKEN_MALFORMED)

        try:
            presented_sig = _decode_segment(sig_b64)
        except (ValueError, TypeError):
            return TokenVerification(failure=AuthFailure.TOKEN_MALFORMED)
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, presented_sig):
            return TokenVerification(failure=AuthFailure.SIGNATURE_INVALID)

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return TokenVerification(failure=AuthFailure.TOKEN_MALFORMED)
        claims = self._claims_from_payload(payload)
        if claims is None:
            return TokenVerification(failure=AuthFailure.TOKEN_MALFORMED)

        now = self._clock()
        if not allow_expired and now >= claims.expires_at:
            return TokenVerification(failure=AuthFailure.TOKEN_EXPIRED)
        if now < claims.not_before:
            return TokenVerification(failure=AuthFailure.TOKEN_EXPIRED)
        return TokenVerification(claims=claims)

    def _claims_from_payload(self, payload: Any) -> Optional[AccessClaims]:
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            if self.audience not in aud:
                return None
        elif aud != self.audience:
            return None

        sub = payload.get("sub")
        sid = payload.get("sid")
        ver = payload.get("ver")
        exp = payload.get("exp")
        if not isinstance(sub, str) or not sub:
            return None
        if not isinstance(sid, str) or not sid:
            return None
        if not _is_int(ver) or not _is_int(exp):
            return None
        nbf = payload.get("nbf", 0)
        iat = payload.get("iat", nbf)
        if not _is_int(iat) or not _is_int(nbf):
            return None
        jti = payload.get("jti")
        return AccessClaims(
            subject=sub,
            session_id=sid,
            session_version=ver,
            issued_at=iat,
            expires_at=exp,
            not_before=nbf,
            token_id=jti if isinstance(jti, str) else "",
        )
