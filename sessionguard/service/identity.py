from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
from urllib.parse import urlencode

import httpx

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.storage.models import IdpGrant

logger = get_logger(__name__)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class PrincipalView(Protocol):
    """What login needs from a provider principal, whatever its shape."""

    @property
    def name(self) -> str: ...

    def preferred_username(self) -> Optional[str]: ...

    def email(self) -> Optional[str]: ...

    def display_name(self) -> Optional[str]: ...


@dataclass
class OidcPrincipal:
    """Principal backed by OpenID Connect standard claims."""

    claims: Dict[str, Any]

    @property
    def name(self) -> str:
        return _text(self.claims.get("sub")) or ""

    def preferred_username(self) -> Optional[str]:
        return _text(self.claims.get("preferred_username"))

    def email(self) -> Optional[str]:
        return _text(self.claims.get("email"))

    def display_name(self) -> Optional[str]:
        for claim in ("name", "given_name", "family_name"):
            value = _text(self.claims.get(claim))
            if value:
                return value
        return None


@dataclass
class OAuth2Principal:
    """Principal backed by an arbitrary userinfo document."""

    attributes: Dict[str, Any]
    name_attribute: str = "sub"

    @property
    def name(self) -> str:
        return _text(self.attributes.get(self.name_attribute)) or ""

    def preferred_username(self) -> Optional[str]:
        return _text(self.attributes.get("preferred_username")) or _text(
            self.attributes.get("login")
        )

    def email(self) -> Optional[str]:
        return _text(self.attributes.get("email"))

    def display_name(self) -> Optional[str]:
        return _text(self.attributes.get("name"))


@dataclass(frozen=True)
class ResolvedIdentity:
    user_id: str
    display_name: str
    principal_name: str


def resolve_identity(principal: PrincipalView) -> ResolvedIdentity:
    """Collapse a provider principal into plain strings, once, at login."""
    principal_name = principal.name
    user_id = principal.email() or principal.preferred_username() or principal_name
    if not user_id:
        raise ValueError("identity provider returned no usable subject")
    display_name = principal.display_name() or principal.email() or user_id
    return ResolvedIdentity(
        user_id=user_id, display_name=display_name, principal_name=principal_name
    )


@dataclass
class IdpAuthentication:
    principal: PrincipalView
    grant: IdpGrant
    extra: Dict[str, Any] = field(default_factory=dict)


class IdentityProvider(Protocol):
    registration_id: str

    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> Optional[IdpAuthentication]: ...

    async def authorize(self, grant: IdpGrant) -> Optional[IdpGrant]: ...


def _grant_from_token_response(
    payload: Mapping[str, Any],
    *,
    now: float,
    previous: Optional[IdpGrant] = None,
) -> Optional[IdpGrant]:
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        return None
    expires_in = payload.get("expires_in")
    expires_at: Optional[float] = None
    if expires_in is not None:
        try:
            expires_at = now + float(expires_in)
        except (TypeError, ValueError):
            expires_at = None
    scope_raw = payload.get("scope")
    if isinstance(scope_raw, str):
        scope = scope_raw.split()
    elif previous is not None:
        scope = list(previous.scope)
    else:
        scope = []
    # Providers may omit the refresh token on refresh; keep the one we hold
    refresh_token = payload.get("refresh_token") or (
        previous.refresh_token if previous else None
    )
    return IdpGrant(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        scope=scope,
    )


class OAuth2ClientProvider:
    """Authorization-code client for a single OAuth2/OIDC registration.

    Every network failure is reported as ``None`` so callers treat the
    provider as a yes/no capability; details go to the log.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registration_id = settings.idp_registration_id
        self.client_id = settings.idp_client_id
        self.client_secret = settings.idp_client_secret
        self.authorize_endpoint = settings.idp_authorization_url
        self.token_endpoint = settings.idp_token_url
        self.userinfo_endpoint = settings.idp_userinfo_url
        self.redirect_uri = settings.idp_redirect_uri
        self.scope = settings.idp_scope
        self.name_attribute = settings.idp_user_name_attribute
        self.timeout = settings.idp_timeout_seconds
        self.clock_skew = settings.idp_clock_skew_seconds
        self._transport = transport
        self._clock = clock

    @property
    def configured(self) -> bool:
        return bool(
            self.client_id
            and self.authorize_endpoint
            and self.token_endpoint
            and self.redirect_uri
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def authorization_url(self, state: str) -> str:
        if not self.configured:
            raise ValueError(f"identity provider {self.registration_id} is not configured")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def _token_request(self, client: httpx.AsyncClient, data: dict) -> Optional[dict]:
        data = {**data, "client_id": self.client_id}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        response = await client.post(
            self.token_endpoint, data=data, headers={"Accept": "application/json"}
        )
        response.raise_for_status()
        try:
            result = response.json()
        except ValueError as exc:
            logger.error(
                "idp_token_parse_error", provider=self.registration_id, error=str(exc)
            )
            return None
        if not isinstance(result, dict):
            logger.error("idp_token_invalid_format", provider=self.registration_id)
            return None
        return result

    async def exchange_code(self, code: str) -> Optional[IdpAuthentication]:
        if not self.configured:
            logger.error("idp_not_configured", provider=self.registration_id)
            return None
        try:
            async with self._client() as client:
                token_result = await self._token_request(
                    client,
                    {
                        "grant_type": "authorization_code",
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                    },
                )
                if token_result is None:
                    return None
                grant = _grant_from_token_response(token_result, now=self._clock())
                if grant is None:
                    logger.error("idp_no_access_token", provider=self.registration_id)
                    return None
                principal = await self._load_principal(client, grant, token_result)
        except httpx.HTTPError as exc:
            logger.error(
                "idp_code_exchange_failed",
                provider=self.registration_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if principal is None:
            return None
        return IdpAuthentication(principal=principal, grant=grant)

    async def _load_principal(
        self, client: httpx.AsyncClient, grant: IdpGrant, token_result: dict
    ) -> Optional[PrincipalView]:
        if not self.userinfo_endpoint:
            logger.error("idp_userinfo_url_missing", provider=self.registration_id)
            return None
        response = await client.get(
            self.userinfo_endpoint,
            headers={"Authorization": f"Bearer {grant.access_token}"},
        )
        response.raise_for_status()
        try:
            userinfo = response.json()
        except ValueError as exc:
            logger.error(
                "idp_userinfo_parse_error", provider=self.registration_id, error=str(exc)
            )
            return None
        if not isinstance(userinfo, dict):
            logger.error("idp_userinfo_invalid_format", provider=self.registration_id)
            return None
        # An id_token in the token response marks an OIDC login; claims come
        # from userinfo since id-token validation is out of scope here.
        if token_result.get("id_token") and "openid" in self.scope.split():
            return OidcPrincipal(claims=userinfo)
        return OAuth2Principal(attributes=userinfo, name_attribute=self.name_attribute)

    async def authorize(self, grant: IdpGrant) -> Optional[IdpGrant]:
        """Confirm the grant is still good, refreshing it with the provider if needed."""
        now = self._clock()
        if grant.expires_at is None or grant.expires_at - self.clock_skew > now:
            return grant
        if not grant.refresh_token:
            logger.info("idp_grant_expired_without_refresh", provider=self.registration_id)
            return None
        if not self.configured:
            logger.error("idp_not_configured", provider=self.registration_id)
            return None
        try:
            async with self._client() as client:
                token_result = await self._token_request(
                    client,
                    {"grant_type": "refresh_token", "refresh_token": grant.refresh_token},
                )
        except httpx.HTTPError as exc:
            logger.warning(
                "idp_refresh_failed",
                provider=self.registration_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if token_result is None:
            return None
        refreshed = _grant_from_token_response(token_result, now=now, previous=grant)
        if refreshed is None:
            logger.warning("idp_refresh_no_access_token", provider=self.registration_id)
        return refreshed
