"""Tests for the OAuth2 Authorization Code + PKCE client."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from pkcesession.auth.client import OAuth2Client, discover_metadata, parse_redirect
from pkcesession.auth.pkce import challenge_for, new_flow
from pkcesession.exceptions import (
    AuthServerError,
    ConfigError,
    NetworkError,
    NoRefreshTokenError,
)
from pkcesession.models import OAuth2Config, TokenSet


def _query(url: str) -> dict[str, list[str]]:
    return parse_qs(urlparse(url).query)


# -------------------------------------------------------------------------
# Authorization URL
# -------------------------------------------------------------------------


class TestBuildAuthorizationUrl:
    def test_round_trip_recovers_state_and_challenge(self, oauth_config: OAuth2Config) -> None:
        flow = new_flow()
        url = OAuth2Client(oauth_config).build_authorization_url(flow)
        params = _query(url)
        assert params["state"] == [flow.state]
        assert params["code_challenge"] == [flow.code_challenge]
        assert params["code_challenge"] == [challenge_for(flow.code_verifier)]

    def test_protocol_parameters(self, oauth_config: OAuth2Config) -> None:
        url = OAuth2Client(oauth_config).build_authorization_url(new_flow())
        parsed = urlparse(url)
        params = _query(url)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://login.example.com/oauth2/authorize"
        )
        assert params["response_type"] == ["code"]
        assert params["client_id"] == ["test-client"]
        assert params["redirect_uri"] == ["http://127.0.0.1:8765/callback"]
        assert params["code_challenge_method"] == ["S256"]
        assert params["scope"] == ["openid email"]

    def test_verifier_never_in_url(self, oauth_config: OAuth2Config) -> None:
        flow = new_flow()
        url = OAuth2Client(oauth_config).build_authorization_url(flow)
        assert flow.code_verifier not in url

    def test_no_scope_parameter_without_scopes(self, oauth_config: OAuth2Config) -> None:
        config = oauth_config.model_copy(update={"scopes": ()})
        params = _query(OAuth2Client(config).build_authorization_url(new_flow()))
        assert "scope" not in params

    def test_extra_params_appended(self, oauth_config: OAuth2Config) -> None:
        config = oauth_config.model_copy(
            update={"extra_auth_params": {"prompt": "consent", "access_type": "offline"}}
        )
        params = _query(OAuth2Client(config).build_authorization_url(new_flow()))
        assert params["prompt"] == ["consent"]
        assert params["access_type"] == ["offline"]

    def test_existing_endpoint_query_kept(self, oauth_config: OAuth2Config) -> None:
        metadata = oauth_config.server_metadata.model_copy(
            update={"authorization_endpoint": "https://login.example.com/authorize?tenant=acme"}
        )
        config = oauth_config.model_copy(update={"server_metadata": metadata})
        params = _query(OAuth2Client(config).build_authorization_url(new_flow()))
        assert params["tenant"] == ["acme"]
        assert params["response_type"] == ["code"]

    def test_extra_params_cannot_override_protocol(self, oauth_config: OAuth2Config) -> None:
        with pytest.raises(ValueError, match="may not override"):
            OAuth2Config(
                client_id="c",
                server_metadata=oauth_config.server_metadata,
                redirect_uri="http://127.0.0.1:8765/callback",
                extra_auth_params={"state": "fixed"},
            )

    def test_extra_params_bounded(self, oauth_config: OAuth2Config) -> None:
        with pytest.raises(ValueError, match="at most"):
            OAuth2Config(
                client_id="c",
                server_metadata=oauth_config.server_metadata,
                redirect_uri="http://127.0.0.1:8765/callback",
                extra_auth_params={f"k{i}": "v" for i in range(33)},
            )


# -------------------------------------------------------------------------
# Code exchange
# -------------------------------------------------------------------------


class TestExchangeCode:
    def test_success(self, oauth_config: OAuth2Config, token_endpoint: MagicMock) -> None:
        flow = new_flow()
        before = datetime.now(timezone.utc)
        tokens = OAuth2Client(oauth_config).exchange_code("abc123", flow)

        assert tokens.access_token == "tok1"
        assert tokens.refresh_token is None
        assert tokens.token_type == "Bearer"
        assert tokens.scopes == ("openid", "email")
        assert before + timedelta(seconds=3590) <= tokens.expires_at

        call = token_endpoint.call_args
        assert call.args[0] == "https://login.example.com/oauth2/token"
        data = call.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "abc123"
        assert data["code_verifier"] == flow.code_verifier
        assert data["redirect_uri"] == "http://127.0.0.1:8765/callback"
        assert data["client_id"] == "test-client"
        assert "client_secret" not in data
        assert call.kwargs["timeout"] == 30.0

    def test_confidential_client_sends_secret(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock
    ) -> None:
        config = oauth_config.model_copy(update={"client_secret": "s3cret"})
        OAuth2Client(config).exchange_code("abc123", new_flow())
        assert token_endpoint.call_args.kwargs["data"]["client_secret"] == "s3cret"

    def test_missing_expires_in_defaults_to_one_hour(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        token_endpoint.return_value = response_factory({"access_token": "tok1"})
        tokens = OAuth2Client(oauth_config).exchange_code("abc123", new_flow())
        remaining = tokens.expires_at - datetime.now(timezone.utc)
        assert timedelta(minutes=59) < remaining <= timedelta(hours=1)

    def test_scope_from_response(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        token_endpoint.return_value = response_factory(
            {"access_token": "tok1", "expires_in": 60, "scope": "openid profile"}
        )
        tokens = OAuth2Client(oauth_config).exchange_code("abc123", new_flow())
        assert tokens.scopes == ("openid", "profile")

    def test_invalid_grant(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        token_endpoint.return_value = response_factory(
            {"error": "invalid_grant", "error_description": "code expired"}, status_code=400
        )
        with pytest.raises(AuthServerError) as exc_info:
            OAuth2Client(oauth_config).exchange_code("abc123", new_flow())
        assert exc_info.value.error_code == "invalid_grant"
        assert exc_info.value.description == "code expired"
        assert exc_info.value.status_code == 400

    def test_http_error_without_oauth_body(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        response = response_factory({}, status_code=502)
        response.json.side_effect = ValueError("not json")
        response.text = "Bad Gateway"
        token_endpoint.return_value = response
        with pytest.raises(AuthServerError) as exc_info:
            OAuth2Client(oauth_config).exchange_code("abc123", new_flow())
        assert exc_info.value.error_code == "http_error"
        assert exc_info.value.status_code == 502

    def test_error_in_200_body(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        token_endpoint.return_value = response_factory({"error": "access_denied"})
        with pytest.raises(AuthServerError, match="access_denied"):
            OAuth2Client(oauth_config).exchange_code("abc123", new_flow())

    def test_missing_access_token(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        token_endpoint.return_value = response_factory({"token_type": "Bearer"})
        with pytest.raises(AuthServerError) as exc_info:
            OAuth2Client(oauth_config).exchange_code("abc123", new_flow())
        assert exc_info.value.error_code == "invalid_response"

    @pytest.mark.parametrize(
        "body",
        [
            {"access_token": "tok1", "expires_in": "soon"},
            {"access_token": "tok1", "expires_in": 1e300},
            {"access_token": ["tok1"], "expires_in": 3600},
        ],
        ids=["non-numeric-expiry", "overflowing-expiry", "non-string-token"],
    )
    def test_malformed_token_fields(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory, body
    ) -> None:
        token_endpoint.return_value = response_factory(body)
        with pytest.raises(AuthServerError) as exc_info:
            OAuth2Client(oauth_config).exchange_code("abc123", new_flow())
        assert exc_info.value.error_code == "invalid_response"

    def test_non_json_body(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        response = response_factory({})
        response.json.side_effect = ValueError("not json")
        token_endpoint.return_value = response
        with pytest.raises(AuthServerError, match="invalid_response"):
            OAuth2Client(oauth_config).exchange_code("abc123", new_flow())

    def test_network_error(self, oauth_config: OAuth2Config, token_endpoint: MagicMock) -> None:
        token_endpoint.side_effect = httpx.ConnectError("connection refused")
        with pytest.raises(NetworkError, match="connection refused"):
            OAuth2Client(oauth_config).exchange_code("abc123", new_flow())

    def test_timeout_is_network_error(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock
    ) -> None:
        token_endpoint.side_effect = httpx.ReadTimeout("timed out")
        with pytest.raises(NetworkError):
            OAuth2Client(oauth_config).exchange_code("abc123", new_flow())
        assert token_endpoint.call_count == 1


# -------------------------------------------------------------------------
# Refresh and revocation
# -------------------------------------------------------------------------


def _tokens(**kwargs: object) -> TokenSet:
    defaults: dict[str, object] = {
        "access_token": "old",
        "refresh_token": "r1",
        "expires_at": datetime.now(timezone.utc) - timedelta(minutes=5),
        "scopes": ("openid",),
    }
    defaults.update(kwargs)
    return TokenSet(**defaults)  # type: ignore[arg-type]


class TestRefresh:
    def test_keeps_refresh_token_when_not_rotated(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock
    ) -> None:
        tokens = OAuth2Client(oauth_config).refresh(_tokens())
        assert tokens.access_token == "tok1"
        assert tokens.refresh_token == "r1"
        assert tokens.scopes == ("openid",)
        data = token_endpoint.call_args.kwargs["data"]
        assert data == {"grant_type": "refresh_token", "refresh_token": "r1", "client_id": "test-client"}

    def test_rotated_refresh_token(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        token_endpoint.return_value = response_factory(
            {"access_token": "tok2", "refresh_token": "r2", "expires_in": 60}
        )
        tokens = OAuth2Client(oauth_config).refresh(_tokens())
        assert tokens.refresh_token == "r2"

    def test_without_refresh_token(self, oauth_config: OAuth2Config) -> None:
        with patch("pkcesession.auth.client.httpx.post") as mock_post:
            with pytest.raises(NoRefreshTokenError):
                OAuth2Client(oauth_config).refresh(_tokens(refresh_token=None))
        mock_post.assert_not_called()

    def test_malformed_expiry(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        token_endpoint.return_value = response_factory({"access_token": "tok2", "expires_in": "later"})
        with pytest.raises(AuthServerError) as exc_info:
            OAuth2Client(oauth_config).refresh(_tokens())
        assert exc_info.value.error_code == "invalid_response"


class TestRevoke:
    def test_revokes_refresh_token(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock
    ) -> None:
        assert OAuth2Client(oauth_config).revoke(_tokens()) is True
        call = token_endpoint.call_args
        assert call.args[0] == "https://login.example.com/oauth2/revoke"
        assert call.kwargs["data"]["token"] == "r1"
        assert call.kwargs["data"]["token_type_hint"] == "refresh_token"
        assert call.kwargs["timeout"] == 10.0

    def test_revokes_access_token_without_refresh(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock
    ) -> None:
        OAuth2Client(oauth_config).revoke(_tokens(refresh_token=None))
        assert token_endpoint.call_args.kwargs["data"]["token"] == "old"

    def test_no_endpoint_skips(self, oauth_config: OAuth2Config, token_endpoint: MagicMock) -> None:
        metadata = oauth_config.server_metadata.model_copy(update={"revocation_endpoint": None})
        config = oauth_config.model_copy(update={"server_metadata": metadata})
        assert OAuth2Client(config).revoke(_tokens()) is False
        token_endpoint.assert_not_called()

    def test_failure_is_swallowed(
        self, oauth_config: OAuth2Config, token_endpoint: MagicMock, response_factory
    ) -> None:
        token_endpoint.return_value = response_factory({"error": "unsupported"}, status_code=503)
        assert OAuth2Client(oauth_config).revoke(_tokens()) is False

        token_endpoint.side_effect = httpx.ConnectError("down")
        assert OAuth2Client(oauth_config).revoke(_tokens()) is False


# -------------------------------------------------------------------------
# Discovery and redirect parsing
# -------------------------------------------------------------------------


_DISCOVERY_DOC = {
    "issuer": "https://login.example.com",
    "authorization_endpoint": "https://login.example.com/authorize",
    "token_endpoint": "https://login.example.com/token",
    "revocation_endpoint": "https://login.example.com/revoke",
    "code_challenge_methods_supported": ["plain", "S256"],
    "jwks_uri": "https://login.example.com/jwks",
}


class TestDiscoverMetadata:
    def test_oauth_well_known(self, response_factory) -> None:
        with patch("pkcesession.auth.client.httpx.get") as mock_get:
            mock_get.return_value = response_factory(_DISCOVERY_DOC)
            metadata = discover_metadata("https://login.example.com/")
        assert mock_get.call_args.args[0] == (
            "https://login.example.com/.well-known/oauth-authorization-server"
        )
        assert metadata.token_endpoint == "https://login.example.com/token"
        assert metadata.revocation_endpoint == "https://login.example.com/revoke"

    def test_falls_back_to_openid_configuration(self, response_factory) -> None:
        with patch("pkcesession.auth.client.httpx.get") as mock_get:
            mock_get.side_effect = [
                response_factory({}, status_code=404),
                response_factory(_DISCOVERY_DOC),
            ]
            metadata = discover_metadata("https://login.example.com")
        assert mock_get.call_args.args[0] == (
            "https://login.example.com/.well-known/openid-configuration"
        )
        assert metadata.authorization_endpoint == "https://login.example.com/authorize"

    def test_direct_document_url(self, response_factory) -> None:
        url = "https://login.example.com/.well-known/openid-configuration"
        with patch("pkcesession.auth.client.httpx.get") as mock_get:
            mock_get.return_value = response_factory(_DISCOVERY_DOC)
            discover_metadata(url)
        assert mock_get.call_count == 1
        assert mock_get.call_args.args[0] == url

    def test_rejects_server_without_s256(self, response_factory) -> None:
        doc = {**_DISCOVERY_DOC, "code_challenge_methods_supported": ["plain"]}
        with patch("pkcesession.auth.client.httpx.get") as mock_get:
            mock_get.return_value = response_factory(doc)
            with pytest.raises(ConfigError, match="S256"):
                discover_metadata("https://login.example.com")

    def test_nothing_found(self, response_factory) -> None:
        with patch("pkcesession.auth.client.httpx.get") as mock_get:
            mock_get.return_value = response_factory({}, status_code=404)
            with pytest.raises(ConfigError, match="Could not discover"):
                discover_metadata("https://login.example.com")

    def test_network_error(self) -> None:
        with patch("pkcesession.auth.client.httpx.get") as mock_get:
            mock_get.side_effect = httpx.ConnectError("dns failure")
            with pytest.raises(NetworkError):
                discover_metadata("https://login.example.com")


class TestParseRedirect:
    def test_code_and_state(self) -> None:
        params = parse_redirect("http://127.0.0.1:8765/callback?code=abc123&state=xyz")
        assert params.code == "abc123"
        assert params.state == "xyz"
        assert params.error is None

    def test_error(self) -> None:
        params = parse_redirect(
            "http://127.0.0.1:8765/callback?error=access_denied&error_description=User+said+no&state=s"
        )
        assert params.error == "access_denied"
        assert params.error_description == "User said no"

    def test_fragment_fallback(self) -> None:
        params = parse_redirect("http://127.0.0.1:8765/callback#code=frag&state=s")
        assert params.code == "frag"

    def test_query_wins_over_fragment(self) -> None:
        params = parse_redirect("http://h/cb?code=q&state=s#code=f")
        assert params.code == "q"

    def test_first_value_used(self) -> None:
        params = parse_redirect("http://h/cb?state=one&state=two")
        assert params.state == "one"
