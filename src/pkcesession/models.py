"""Canonical Pydantic models shared across all pkcesession modules.

The models fall into three groups:

**Protocol models** -- immutable descriptors loaded once at configuration
time: :class:`AuthorizationServerMetadata` and :class:`OAuth2Config`.

**Session models** -- runtime state owned by the session store and the
coordinator: :class:`PendingFlow`, :class:`TokenSet`, :class:`Session`,
:class:`SessionsChangeEvent`, :class:`RedirectParams` and
:class:`SignInState`.

**Configuration models** -- serialised as JSON in the user's config
directory: :class:`OutputConfig`, :class:`ProviderSettings` and
:class:`GlobalConfig`.

Secrets (tokens, verifiers, ``state`` values) are declared with
``repr=False`` so they never leak through ``repr()`` or log formatting.
"""

from __future__ import annotations

import base64
import enum
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

RESERVED_AUTH_PARAMS = frozenset(
    {
        "response_type",
        "client_id",
        "redirect_uri",
        "scope",
        "state",
        "code_challenge",
        "code_challenge_method",
    }
)
"""Authorization request parameters that extra parameters may not override."""

MAX_EXTRA_AUTH_PARAMS = 32

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Protocol models ---


class AuthorizationServerMetadata(BaseModel):
    """Immutable description of an OAuth2 authorization server (:rfc:`8414`).

    Unknown keys are dropped so that a full discovery document can be
    validated directly into this model.

    Example::

        AuthorizationServerMetadata(
            issuer="https://login.example.com",
            authorization_endpoint="https://login.example.com/oauth2/authorize",
            token_endpoint="https://login.example.com/oauth2/token",
        )
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    revocation_endpoint: Optional[str] = None
    response_types_supported: tuple[str, ...] = ("code",)
    grant_types_supported: tuple[str, ...] = ("authorization_code", "refresh_token")
    code_challenge_methods_supported: tuple[str, ...] = ("S256",)
    scopes_supported: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check_pkce_support(self) -> AuthorizationServerMetadata:
        methods = self.code_challenge_methods_supported
        if methods and "S256" not in methods:
            raise ValueError(
                f"authorization server does not support S256 PKCE (supports: {', '.join(methods)})"
            )
        if self.response_types_supported and "code" not in self.response_types_supported:
            raise ValueError("authorization server does not support response_type=code")
        return self


class OAuth2Config(BaseModel):
    """Client-side OAuth2 settings, immutable for the lifetime of a client.

    ``client_secret`` is ``None`` for public clients that rely on PKCE
    alone.  ``extra_auth_params`` is the only extension point: a bounded
    string map appended to the authorization URL that may not shadow any
    protocol parameter.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: Optional[str] = Field(default=None, repr=False)
    server_metadata: AuthorizationServerMetadata
    redirect_uri: str
    scopes: tuple[str, ...] = ()
    extra_auth_params: dict[str, str] = Field(default_factory=dict)
    request_timeout: float = Field(default=30.0, gt=0, description="Token endpoint timeout in seconds")
    revocation_timeout: float = Field(default=10.0, gt=0, description="Revocation timeout in seconds")

    @field_validator("extra_auth_params")
    @classmethod
    def _check_extra_params(cls, value: dict[str, str]) -> dict[str, str]:
        if len(value) > MAX_EXTRA_AUTH_PARAMS:
            raise ValueError(
                f"at most {MAX_EXTRA_AUTH_PARAMS} extra authorization parameters are allowed"
            )
        clashes = sorted(RESERVED_AUTH_PARAMS.intersection(value))
        if clashes:
            raise ValueError(f"extra authorization parameters may not override: {', '.join(clashes)}")
        return value


# --- Session models ---


class PendingFlow(BaseModel):
    """One in-flight authorization attempt.

    Created by :func:`pkcesession.auth.pkce.new_flow` and owned by the
    coordinator's single pending slot until it resolves.
    """

    state: str = Field(repr=False)
    code_verifier: str = Field(repr=False)
    code_challenge: str = Field(repr=False)
    created_at: datetime = Field(default_factory=_utcnow)
    cancelled: bool = False


class TokenSet(BaseModel):
    """Tokens returned by the token endpoint for one session."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_type: str = "Bearer"
    expires_at: datetime
    scopes: tuple[str, ...] = ()
    id_token: Optional[str] = Field(default=None, repr=False)

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        requested_scopes: tuple[str, ...] = (),
        previous: Optional[TokenSet] = None,
        now: Optional[datetime] = None,
    ) -> TokenSet:
        """Build a token set from a token endpoint JSON body.

        Missing ``scope`` falls back to *previous* scopes, then to the
        requested scopes (:rfc:`6749` section 5.1).  A missing
        ``refresh_token`` keeps the one from *previous*, since servers
        that do not rotate refresh tokens omit it from refresh responses.
        """
        now = now or _utcnow()
        expires_in = data.get("expires_in")
        if expires_in is not None:
            expires_at = now + timedelta(seconds=float(expires_in))
        else:
            expires_at = now + DEFAULT_TOKEN_LIFETIME

        if data.get("scope"):
            scopes = tuple(str(data["scope"]).split())
        elif previous is not None:
            scopes = previous.scopes
        else:
            scopes = requested_scopes

        refresh_token = data.get("refresh_token")
        if refresh_token is None and previous is not None:
            refresh_token = previous.refresh_token

        id_token = data.get("id_token")
        if id_token is None and previous is not None:
            id_token = previous.id_token

        return cls(
            access_token=data["access_token"],
            refresh_token=refresh_token,
            token_type=data.get("token_type") or "Bearer",
            expires_at=expires_at,
            scopes=scopes,
            id_token=id_token,
        )

    def is_expired(self, now: Optional[datetime] = None, leeway: float = 30.0) -> bool:
        """Whether the access token is expired, or will be within *leeway* seconds."""
        now = now or _utcnow()
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return now >= expires - timedelta(seconds=leeway)

    def id_token_claims(self) -> dict[str, Any]:
        """Decode the ``id_token`` payload without verifying its signature.

        The claims are used for display only (the account label); nothing
        here is trusted for authorisation decisions.  Returns an empty dict
        when there is no ``id_token`` or it is not a well-formed JWT.
        """
        if not self.id_token:
            return {}
        parts = self.id_token.split(".")
        if len(parts) != 3:
            return {}
        payload = parts[1]
        payload += "=" * (-len(payload) % 4)
        try:
            claims = json.loads(base64.urlsafe_b64decode(payload).decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            return {}
        return claims if isinstance(claims, dict) else {}


class Session(BaseModel):
    """A signed-in session: account identity plus the tokens that prove it.

    The session store is the exclusive owner of every ``Session``; the
    token set is never held independently of it.
    """

    id: str
    account_label: str
    tokens: TokenSet
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def scopes(self) -> tuple[str, ...]:
        return self.tokens.scopes

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """False when the access token is expired and cannot be refreshed."""
        return not self.tokens.is_expired(now) or self.tokens.refresh_token is not None


class SessionsChangeEvent(BaseModel):
    """Payload delivered to ``on_sessions_changed`` listeners."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    added: tuple[Session, ...] = ()
    removed: tuple[Session, ...] = ()
    changed: tuple[Session, ...] = ()


class RedirectParams(BaseModel):
    """Query parameters extracted from an authorization redirect."""

    model_config = ConfigDict(frozen=True)

    state: Optional[str] = Field(default=None, repr=False)
    code: Optional[str] = Field(default=None, repr=False)
    error: Optional[str] = None
    error_description: Optional[str] = None


class SignInState(str, enum.Enum):
    """Coarse state of a :class:`~pkcesession.auth.coordinator.SessionCoordinator`."""

    SIGNED_OUT = "signed_out"
    FLOW_PENDING = "flow_pending"
    SIGNED_IN = "signed_in"


# --- Configuration models ---


class OutputConfig(BaseModel):
    """Default output format preferences stored in :class:`GlobalConfig`."""

    format: str = Field(default="auto", description="Output format: auto, json, plain, rich")


class ProviderSettings(BaseModel):
    """Persisted settings for one authorization server + client registration.

    Endpoints may be left empty when ``issuer`` supports metadata
    discovery; :func:`~pkcesession.config.build_oauth2_config` fills them
    in.  The client secret is never stored directly, only a source
    descriptor (``env:VAR``, ``file:/path`` or ``prompt``).

    Example::

        ProviderSettings(
            issuer="https://login.example.com",
            client_id="my-cli",
            scopes=["openid", "email"],
        )
    """

    model_config = ConfigDict(extra="forbid")

    provider_id: str = Field(default="default", description="Identifier reported to the host")
    issuer: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    client_id: Optional[str] = None
    client_secret_source: Optional[str] = Field(
        default=None, description="Credential source: env:VAR, file:/path, prompt"
    )
    redirect_uri: str = "http://127.0.0.1:8765/callback"
    scopes: list[str] = Field(default_factory=lambda: ["openid", "email", "profile"])
    extra_auth_params: dict[str, str] = Field(default_factory=dict)
    account_label: str = Field(default="OAuth2 account", description="Label when no id_token claim names the user")
    flow_timeout: float = Field(default=300.0, gt=0, description="Seconds to wait for the redirect")
    request_timeout: float = Field(default=30.0, gt=0)
    revocation_timeout: float = Field(default=10.0, gt=0)
    persist_sessions: bool = Field(default=True, description="Keep a session snapshot on disk")


class GlobalConfig(BaseModel):
    """User-wide configuration persisted at ``~/.config/pkcesession/config.json``.

    Fields here have the lowest precedence and can be overridden by
    project config, environment variables, or CLI flags.  See
    :func:`~pkcesession.config.resolve_settings` for the full chain.
    """

    default_provider: Optional[str] = None
    output: OutputConfig = Field(default_factory=OutputConfig)
    providers: dict[str, ProviderSettings] = Field(default_factory=dict)
