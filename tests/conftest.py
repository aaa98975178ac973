"""Shared test fixtures for pkcesession.

Provides an isolated config environment, an in-memory recording host,
ready-made client configuration, and a patched token endpoint.  These
fixtures are automatically discovered by pytest and available to all test
modules without explicit imports.
"""

from __future__ import annotations

import base64
import json
import logging
from pathlib import Path
from typing import Any, Optional
from unittest.mock import MagicMock, patch

import httpx
import pytest

from pkcesession.auth.host import AuthenticationHost
from pkcesession.models import AuthorizationServerMetadata, OAuth2Config
from pkcesession.output import OutputFormat, OutputManager, reset_output, set_output


ISSUER = "https://login.example.com"
REDIRECT_URI = "http://127.0.0.1:8765/callback"


# ---------------------------------------------------------------------------
# Auto-reset global output and logging state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager and root log handlers after every test.

    Both cache references to sys.stdout/sys.stderr.  When Typer's CliRunner
    redirects those streams during a test and the test finishes, the
    cached references become stale ("I/O operation on closed file").
    """
    yield
    reset_output()
    root = logging.getLogger()
    for handler in list(root.handlers):
        if type(handler) is logging.StreamHandler:
            root.removeHandler(handler)


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration and session snapshots to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to subdirectories of tmp_path,
    clears every OAUTH_* and PKCESESSION_* variable, and changes the
    working directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setattr("pkcesession.config._is_xdg_platform", lambda: True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

    for var in [
        "OAUTH_ISSUER",
        "OAUTH_AUTH_ENDPOINT",
        "OAUTH_TOKEN_ENDPOINT",
        "OAUTH_REVOCATION_ENDPOINT",
        "OAUTH_CLIENT_ID",
        "OAUTH_CLIENT_SECRET",
        "OAUTH_REDIRECT_URI",
        "OAUTH_SCOPES",
        "PKCESESSION_PROVIDER",
        "NO_COLOR",
    ]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Client configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def metadata() -> AuthorizationServerMetadata:
    return AuthorizationServerMetadata(
        issuer=ISSUER,
        authorization_endpoint=f"{ISSUER}/oauth2/authorize",
        token_endpoint=f"{ISSUER}/oauth2/token",
        revocation_endpoint=f"{ISSUER}/oauth2/revoke",
    )


@pytest.fixture
def oauth_config(metadata: AuthorizationServerMetadata) -> OAuth2Config:
    return OAuth2Config(
        client_id="test-client",
        server_metadata=metadata,
        redirect_uri=REDIRECT_URI,
        scopes=("openid", "email"),
    )


# ---------------------------------------------------------------------------
# Token endpoint mocking
# ---------------------------------------------------------------------------


def make_response(
    body: Any = None,
    status_code: int = 200,
) -> MagicMock:
    """Create a mock ``httpx.Response`` with a JSON *body*."""
    if body is None:
        body = {"access_token": "test-token", "expires_in": 3600}

    mock_response = MagicMock(spec=httpx.Response)
    mock_response.status_code = status_code
    mock_response.json.return_value = body
    mock_response.text = json.dumps(body)

    if status_code >= 400:
        mock_response.raise_for_status.side_effect = httpx.HTTPStatusError(
            message=f"HTTP {status_code}",
            request=MagicMock(),
            response=mock_response,
        )
    else:
        mock_response.raise_for_status.return_value = None

    return mock_response


@pytest.fixture
def token_endpoint() -> MagicMock:
    """Patch ``httpx.post`` in the client module.

    The default response is ``{"access_token": "tok1", "expires_in": 3600}``;
    set ``return_value`` or ``side_effect`` on the returned mock to change it.
    """
    with patch("pkcesession.auth.client.httpx.post") as mock_post:
        mock_post.return_value = make_response({"access_token": "tok1", "expires_in": 3600})
        yield mock_post


def make_id_token(claims: dict[str, Any]) -> str:
    """Build an unsigned JWT carrying *claims* (display-only decoding)."""

    def segment(data: dict[str, Any]) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    return f"{segment({'alg': 'none'})}.{segment(claims)}.sig"


# ---------------------------------------------------------------------------
# Host fake
# ---------------------------------------------------------------------------


class RecordingHost(AuthenticationHost):
    """In-memory host that records every call the coordinator makes.

    Args:
        reject_offers: Number of upcoming ``register_offer_sign_in`` calls
            to reject with ``RuntimeError`` before accepting.
        fail_open: Make ``open_external_url`` raise.
    """

    def __init__(self, reject_offers: int = 0, fail_open: bool = False) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.opened: list[str] = []
        self.signed_in: Optional[bool] = None
        self.offer_visible = False
        self.notifications = 0
        self.reject_offers = reject_offers
        self.fail_open = fail_open

    def open_external_url(self, url: str) -> None:
        self.calls.append(("open", url))
        if self.fail_open:
            raise RuntimeError("no browser")
        self.opened.append(url)

    def register_offer_sign_in(self, provider_id: str) -> None:
        self.calls.append(("offer", provider_id))
        if self.reject_offers > 0:
            self.reject_offers -= 1
            raise RuntimeError("previous offer still being torn down")
        self.offer_visible = True

    def withdraw_offer_sign_in(self, provider_id: str) -> None:
        self.calls.append(("withdraw", provider_id))
        self.offer_visible = False

    def notify_sessions_changed(self, provider_id: str) -> None:
        self.calls.append(("changed", provider_id))
        self.notifications += 1

    def set_signed_in(self, provider_id: str, signed_in: bool) -> None:
        self.calls.append(("signed_in", signed_in))
        self.signed_in = signed_in


@pytest.fixture
def host() -> RecordingHost:
    return RecordingHost()


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()


@pytest.fixture
def response_factory():
    """The :func:`make_response` helper, for modules that build their own responses."""
    return make_response


@pytest.fixture
def id_token_factory():
    """The :func:`make_id_token` helper."""
    return make_id_token


@pytest.fixture
def host_factory():
    """The :class:`RecordingHost` class, for tests that need a misbehaving host."""
    return RecordingHost
