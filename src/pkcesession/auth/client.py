"""OAuth2 Authorization Code + PKCE client.

This module provides :class:`OAuth2Client`, which speaks the protocol half
of the sign-in flow:

1. Builds the authorization URL the host sends the user to.
2. Exchanges the authorization code (plus the PKCE verifier) for tokens.
3. Refreshes tokens with a refresh token.
4. Revokes tokens on sign-out, best-effort (:rfc:`7009`).

It never opens a browser and never retries: navigating the user is a host
concern, and retry policy belongs to the caller because authorization
codes are single-use.

Also exports :func:`discover_metadata` (:rfc:`8414` / OpenID Connect
discovery) and :func:`parse_redirect`.

See Also:
    :class:`pkcesession.auth.coordinator.SessionCoordinator`, the only
    caller in this package.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import httpx

from pkcesession.auth.pkce import redact
from pkcesession.exceptions import (
    AuthServerError,
    ConfigError,
    NetworkError,
    NoRefreshTokenError,
)
from pkcesession.models import (
    AuthorizationServerMetadata,
    OAuth2Config,
    PendingFlow,
    RedirectParams,
    TokenSet,
)

logger = logging.getLogger(__name__)

_WELL_KNOWN_PATHS = (
    "/.well-known/oauth-authorization-server",
    "/.well-known/openid-configuration",
)


class OAuth2Client:
    """Protocol client bound to one :class:`~pkcesession.models.OAuth2Config`.

    Args:
        config: Client registration and authorization-server metadata.

    Example::

        client = OAuth2Client(config)
        url = client.build_authorization_url(flow)
        tokens = client.exchange_code("abc123", flow)
    """

    def __init__(self, config: OAuth2Config) -> None:
        self._config = config

    @property
    def config(self) -> OAuth2Config:
        return self._config

    @property
    def metadata(self) -> AuthorizationServerMetadata:
        return self._config.server_metadata

    def build_authorization_url(self, flow: PendingFlow) -> str:
        """Return the authorization endpoint URL for *flow*.

        Query parameters already present on the configured endpoint are
        kept; the protocol parameters and any ``extra_auth_params`` are
        appended.  No I/O is performed.
        """
        config = self._config
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "state": flow.state,
            "code_challenge": flow.code_challenge,
            "code_challenge_method": "S256",
        }
        if config.scopes:
            params["scope"] = " ".join(config.scopes)
        params.update(config.extra_auth_params)

        parsed = urlparse(self.metadata.authorization_endpoint)
        query = f"{parsed.query}&{urlencode(params)}" if parsed.query else urlencode(params)
        return urlunparse(parsed._replace(query=query))

    def exchange_code(self, code: str, flow: PendingFlow) -> TokenSet:
        """Exchange an authorization code for a token set.

        Args:
            code: The ``code`` query parameter from the redirect.
            flow: The pending flow the redirect was correlated with; its
                verifier proves possession of the original challenge.

        Returns:
            The token set issued by the server.

        Raises:
            AuthServerError: If the server rejects the exchange or returns
                an unusable body.
            NetworkError: On transport failure.
        """
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_uri,
            "client_id": self._config.client_id,
            "code_verifier": flow.code_verifier,
        }
        if self._config.client_secret:
            data["client_secret"] = self._config.client_secret

        logger.debug(
            "Exchanging authorization code for flow state=%s verifier=%s",
            redact(flow.state),
            redact(flow.code_verifier),
        )
        token_data = self._post_token(data, "Token exchange")
        return self._token_set(token_data, "Token exchange")

    def refresh(self, tokens: TokenSet) -> TokenSet:
        """Obtain a new token set using ``tokens.refresh_token``.

        Raises:
            NoRefreshTokenError: If *tokens* carries no refresh token.
            AuthServerError: If the server rejects the refresh.
            NetworkError: On transport failure.
        """
        if not tokens.refresh_token:
            raise NoRefreshTokenError("No refresh token available; sign in again")

        data: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": tokens.refresh_token,
            "client_id": self._config.client_id,
        }
        if self._config.client_secret:
            data["client_secret"] = self._config.client_secret

        token_data = self._post_token(data, "Token refresh")
        return self._token_set(token_data, "Token refresh", previous=tokens)

    def revoke(self, tokens: TokenSet) -> bool:
        """Revoke *tokens* at the revocation endpoint, if one is configured.

        The refresh token is revoked when present (which invalidates the
        whole grant on most servers), otherwise the access token.  Uses
        ``revocation_timeout`` so local sign-out never waits on a slow
        server for long.  Failures are logged, never raised.

        Returns:
            ``True`` if the server acknowledged the revocation.
        """
        endpoint = self.metadata.revocation_endpoint
        if not endpoint:
            logger.debug("No revocation endpoint configured; skipping revocation")
            return False

        if tokens.refresh_token:
            data = {"token": tokens.refresh_token, "token_type_hint": "refresh_token"}
        else:
            data = {"token": tokens.access_token, "token_type_hint": "access_token"}
        data["client_id"] = self._config.client_id
        if self._config.client_secret:
            data["client_secret"] = self._config.client_secret

        try:
            response = httpx.post(
                endpoint,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._config.revocation_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Token revocation rejected with status %s", exc.response.status_code
            )
            return False
        except httpx.HTTPError as exc:
            logger.warning("Token revocation failed: %s", exc)
            return False
        return True

    def _token_set(
        self, token_data: dict[str, Any], action: str, previous: Optional[TokenSet] = None
    ) -> TokenSet:
        """Build a :class:`TokenSet`, rejecting malformed field values.

        Raises:
            AuthServerError: ``invalid_response`` when a field has the wrong
                type or an out-of-range value (e.g. a non-numeric
                ``expires_in``).
        """
        try:
            return TokenSet.from_token_response(
                token_data, requested_scopes=self._config.scopes, previous=previous
            )
        except (ValueError, TypeError, OverflowError) as exc:
            raise AuthServerError(
                "invalid_response", f"{action} returned malformed token fields: {exc}"
            ) from exc

    def _post_token(self, data: dict[str, str], action: str) -> dict[str, Any]:
        """POST a form to the token endpoint and return the parsed JSON body."""
        try:
            response = httpx.post(
                self.metadata.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._config.request_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise _server_error(exc.response) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{action} failed: {exc}") from exc

        try:
            token_data = response.json()
        except ValueError as exc:
            raise AuthServerError(
                "invalid_response", f"{action} returned a non-JSON body", response.status_code
            ) from exc

        if not isinstance(token_data, dict):
            raise AuthServerError(
                "invalid_response", f"{action} returned a non-object body", response.status_code
            )
        if "error" in token_data:
            raise AuthServerError(
                str(token_data["error"]),
                token_data.get("error_description"),
                response.status_code,
            )
        if "access_token" not in token_data:
            raise AuthServerError(
                "invalid_response",
                f"{action} response missing 'access_token' field",
                response.status_code,
            )
        return token_data


def _server_error(response: httpx.Response) -> AuthServerError:
    """Build an :class:`AuthServerError` from a non-2xx token endpoint response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return AuthServerError(
            str(body["error"]), body.get("error_description"), response.status_code
        )
    return AuthServerError("http_error", response.text or None, response.status_code)


def discover_metadata(issuer: str, timeout: float = 30.0) -> AuthorizationServerMetadata:
    """Fetch authorization-server metadata for *issuer*.

    Tries ``/.well-known/oauth-authorization-server`` (:rfc:`8414`) first
    and falls back to ``/.well-known/openid-configuration``.  If *issuer*
    already points at a ``.well-known`` document it is fetched directly.

    Raises:
        ConfigError: If no usable metadata document is found.
        NetworkError: On transport failure.
    """
    if "/.well-known/" in issuer:
        candidates = [issuer]
    else:
        base = issuer.rstrip("/")
        candidates = [base + path for path in _WELL_KNOWN_PATHS]

    failures: list[str] = []
    for url in candidates:
        try:
            response = httpx.get(url, headers={"Accept": "application/json"}, timeout=timeout)
            response.raise_for_status()
            doc = response.json()
        except httpx.HTTPStatusError as exc:
            failures.append(f"{url}: HTTP {exc.response.status_code}")
            continue
        except httpx.HTTPError as exc:
            raise NetworkError(f"Metadata discovery failed: {exc}") from exc
        except ValueError:
            failures.append(f"{url}: not JSON")
            continue

        if not isinstance(doc, dict):
            failures.append(f"{url}: not a JSON object")
            continue
        missing = [k for k in ("authorization_endpoint", "token_endpoint") if k not in doc]
        if missing:
            failures.append(f"{url}: missing {', '.join(missing)}")
            continue

        doc.setdefault("issuer", issuer)
        try:
            metadata = AuthorizationServerMetadata.model_validate(doc)
        except ValueError as exc:
            raise ConfigError(f"Invalid authorization server metadata at {url}: {exc}") from exc
        logger.debug("Discovered authorization server metadata at %s", url)
        return metadata

    raise ConfigError(
        "Could not discover authorization server metadata for "
        f"{issuer} ({'; '.join(failures)})"
    )


def parse_redirect(uri: str) -> RedirectParams:
    """Extract ``code``/``state``/``error`` from a redirect URI.

    Only the first value of each parameter is used.  Both the query
    string and, for implicit-style servers, the fragment are consulted;
    the query wins.
    """
    parsed = urlparse(uri)
    params: dict[str, list[str]] = parse_qs(parsed.fragment)
    params.update(parse_qs(parsed.query))

    def first(name: str) -> Optional[str]:
        values = params.get(name)
        return values[0] if values else None

    return RedirectParams(
        state=first("state"),
        code=first("code"),
        error=first("error"),
        error_description=first("error_description"),
    )
