"""Tests for the loopback redirect receiver, using a real local socket."""

from __future__ import annotations

from http.client import HTTPConnection
from typing import Any
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from pkcesession.auth.callback_server import CallbackServer, find_free_port, is_loopback_redirect
from pkcesession.auth.coordinator import SessionCoordinator
from pkcesession.exceptions import ConfigError
from pkcesession.models import OAuth2Config, SignInState


def _get(port: int, path: str) -> tuple[int, str]:
    conn = HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        conn.request("GET", path)
        response = conn.getresponse()
        return response.status, response.read().decode("utf-8")
    finally:
        conn.close()


@pytest.fixture()
def redirect_uri() -> str:
    return f"http://127.0.0.1:{find_free_port()}/callback"


@pytest.fixture()
def coordinator(
    oauth_config: OAuth2Config, host: Any, token_endpoint: MagicMock, redirect_uri: str
) -> SessionCoordinator:
    config = oauth_config.model_copy(update={"redirect_uri": redirect_uri})
    coord = SessionCoordinator(config, host, provider_id="test")
    coord.restore()
    yield coord
    coord.close()


class TestIsLoopbackRedirect:
    @pytest.mark.parametrize(
        "uri",
        [
            "http://127.0.0.1:8765/callback",
            "http://localhost:9000/cb",
            "http://[::1]:8080/callback",
        ],
    )
    def test_loopback(self, uri: str) -> None:
        assert is_loopback_redirect(uri)

    @pytest.mark.parametrize(
        "uri",
        [
            "https://127.0.0.1:8765/callback",
            "http://example.com/callback",
            "com.example.app:/oauth2redirect",
        ],
    )
    def test_not_loopback(self, uri: str) -> None:
        assert not is_loopback_redirect(uri)


class TestCallbackServer:
    def test_rejects_non_loopback_uri(self, coordinator: SessionCoordinator) -> None:
        with pytest.raises(ConfigError, match="loopback"):
            CallbackServer(coordinator, "https://app.example.com/callback")

    def test_requires_port(self, coordinator: SessionCoordinator) -> None:
        with pytest.raises(ConfigError, match="port"):
            CallbackServer(coordinator, "http://127.0.0.1/callback")

    def test_completes_sign_in(
        self, coordinator: SessionCoordinator, redirect_uri: str, token_endpoint: MagicMock
    ) -> None:
        with CallbackServer(coordinator, redirect_uri) as server:
            attempt = coordinator.begin_sign_in()
            state = parse_qs(urlparse(attempt.authorization_url).query)["state"][0]

            status, body = _get(server.port, f"/callback?code=abc123&state={state}")

        assert status == 200
        assert "Signed in as OAuth2 account" in body
        session = attempt.result(timeout=5)
        assert session.tokens.access_token == "tok1"
        assert coordinator.state == SignInState.SIGNED_IN

    def test_rejects_wrong_state(
        self, coordinator: SessionCoordinator, redirect_uri: str
    ) -> None:
        with CallbackServer(coordinator, redirect_uri) as server:
            attempt = coordinator.begin_sign_in()
            status, body = _get(server.port, "/callback?code=abc123&state=forged")

        assert status == 400
        assert "Sign-in failed" in body
        assert not attempt.done()
        assert coordinator.state == SignInState.FLOW_PENDING

    def test_error_redirect(self, coordinator: SessionCoordinator, redirect_uri: str) -> None:
        with CallbackServer(coordinator, redirect_uri) as server:
            attempt = coordinator.begin_sign_in()
            state = parse_qs(urlparse(attempt.authorization_url).query)["state"][0]
            status, body = _get(server.port, f"/callback?error=access_denied&state={state}")

        assert status == 400
        assert "access_denied" in body
        assert coordinator.state == SignInState.SIGNED_OUT

    def test_other_paths_not_forwarded(
        self, coordinator: SessionCoordinator, redirect_uri: str
    ) -> None:
        with CallbackServer(coordinator, redirect_uri) as server:
            coordinator.begin_sign_in()
            status, _ = _get(server.port, "/favicon.ico")

        assert status == 404
        assert coordinator.state == SignInState.FLOW_PENDING

    def test_html_escaped(self, coordinator: SessionCoordinator, redirect_uri: str) -> None:
        with CallbackServer(coordinator, redirect_uri) as server:
            attempt = coordinator.begin_sign_in()
            state = parse_qs(urlparse(attempt.authorization_url).query)["state"][0]
            _, body = _get(
                server.port,
                f"/callback?error=x&error_description=%3Cscript%3E&state={state}",
            )

        assert "<script>" not in body
        assert "&lt;script&gt;" in body

    def test_stop_is_idempotent(self, coordinator: SessionCoordinator, redirect_uri: str) -> None:
        server = CallbackServer(coordinator, redirect_uri)
        server.start()
        server.stop()
        server.stop()
