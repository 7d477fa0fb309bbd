from __future__ import annotations

import enum
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class SessionRecord:
    """Server-side record of one login; the authority on whether a token is current."""

    session_id: str
    user_id: str
    version: int
    last_seen: int


class SessionCheck(str, enum.Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    VERSION_MISMATCH = "version_mismatch"
    IDLE_TIMEOUT = "idle_timeout"


@dataclass
class IdpGrant:
    """Tokens the identity provider handed out for one browser login."""

    access_token: str
    refresh_token: Optional[str] = None
    # epoch seconds; None when the provider did not say
    expires_at: Optional[float] = None
    scope: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdpGrant":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
            scope=list(data.get("scope") or []),
        )


@dataclass
class BrowserSession:
    """Per-browser server-side context addressed by the browser-session cookie.

    Holds what the login callback learned (session id, version, grant) so the
    refresh endpoint can re-establish an access token without the client
    presenting one.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    session_id: Optional[str] = None
    version: Optional[int] = None
    user_id: Optional[str] = None
    display_name: Optional[str] = None
    principal_name: Optional[str] = None
    grant: Optional[IdpGrant] = None
    oauth_state: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.session_id is not None and self.version is not None

    def rotate_id(self) -> str:
        """Assign a fresh id and return the old one so the caller can drop it."""
        previous = self.id
        self.id = uuid.uuid4().hex
        return previous

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["grant"] = self.grant.to_dict() if self.grant else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrowserSession":
        grant = data.get("grant")
        version = data.get("version")
        return cls(
            id=data["id"],
            session_id=data.get("session_id"),
            version=int(version) if version is not None else None,
            user_id=data.get("user_id"),
            display_name=data.get("display_name"),
            principal_name=data.get("principal_name"),
            grant=IdpGrant.from_dict(grant) if grant else None,
            oauth_state=data.get("oauth_state"),
        )
