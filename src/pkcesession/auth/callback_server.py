"""Loopback HTTP server that receives authorization redirects.

Native applications receive the authorization response on a loopback
redirect URI (:rfc:`8252` section 7.3), e.g.
``http://127.0.0.1:8765/callback``.  :class:`CallbackServer` listens on
that address in a background thread and hands every request for the
redirect path to :meth:`SessionCoordinator.handle_redirect
<pkcesession.auth.coordinator.SessionCoordinator.handle_redirect>`.  The
coordinator does the correlation; this module only translates between
HTTP and that call.

Requests for other paths get a 404 and never reach the coordinator, which
keeps browser favicon requests from being logged as rejected redirects.
"""

from __future__ import annotations

import html
import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import urlparse

from pkcesession.auth.coordinator import SessionCoordinator
from pkcesession.exceptions import ConfigError, PkceSessionError

logger = logging.getLogger(__name__)

_LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1", "[::1]")


def find_free_port() -> int:
    """Find a free TCP port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def is_loopback_redirect(redirect_uri: str) -> bool:
    """Whether *redirect_uri* is an ``http`` URI on a loopback host."""
    parsed = urlparse(redirect_uri)
    return parsed.scheme == "http" and (parsed.hostname or "") in _LOOPBACK_HOSTS


def _page(title: str, detail: str = "") -> bytes:
    body = f"<h2>{html.escape(title)}</h2>"
    if detail:
        body += f"<p>{html.escape(detail)}</p>"
    return f"<html><body>{body}</body></html>".encode("utf-8")


class CallbackServer:
    """Serve the loopback redirect URI until stopped.

    Args:
        coordinator: Receives every redirect via ``handle_redirect``.
        redirect_uri: The configured loopback redirect URI; its host,
            port and path determine where the server listens.

    Raises:
        ConfigError: If *redirect_uri* is not a loopback ``http`` URI with
            an explicit port.

    Example::

        with CallbackServer(coordinator, "http://127.0.0.1:8765/callback"):
            session = coordinator.begin_sign_in().result()
    """

    def __init__(self, coordinator: SessionCoordinator, redirect_uri: str) -> None:
        if not is_loopback_redirect(redirect_uri):
            raise ConfigError(
                f"Redirect URI {redirect_uri} is not a loopback http:// address; "
                "use --paste to complete sign-in manually"
            )
        parsed = urlparse(redirect_uri)
        if parsed.port is None:
            raise ConfigError(f"Redirect URI {redirect_uri} must include an explicit port")

        self._coordinator = coordinator
        self._redirect_uri = redirect_uri
        self._host = "127.0.0.1" if parsed.hostname == "localhost" else (parsed.hostname or "127.0.0.1")
        self._port = parsed.port
        self._path = parsed.path or "/"
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._port

    def start(self) -> None:
        """Bind the socket and start serving in a daemon thread.

        Raises:
            OSError: If the port is already in use.
        """
        if self._server is not None:
            return
        handler = self._make_handler()
        self._server = ThreadingHTTPServer((self._host, self._port), handler)
        self._server.daemon_threads = True
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="pkcesession-callback", daemon=True
        )
        self._thread.start()
        logger.debug("Listening for redirects on %s", self._redirect_uri)

    def stop(self) -> None:
        """Shut the server down and wait for its thread."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None

    def __enter__(self) -> CallbackServer:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        coordinator = self._coordinator
        expected_path = self._path
        redirect_base = f"http://{self._host}:{self._port}"

        class CallbackHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path != expected_path:
                    self._respond(404, _page("Not found"))
                    return

                try:
                    session = coordinator.handle_redirect(redirect_base + self.path)
                except PkceSessionError as exc:
                    self._respond(400, _page("Sign-in failed", str(exc)))
                    return

                self._respond(
                    200,
                    _page(
                        f"Signed in as {session.account_label}",
                        "You can close this window and return to the terminal.",
                    ),
                )

            def _respond(self, status: int, body: bytes) -> None:
                self.send_response(status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.send_header("Cache-Control", "no-store")
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                # The query string carries the code and state
                logger.debug("Callback request: %s", self.command)

        return CallbackHandler
