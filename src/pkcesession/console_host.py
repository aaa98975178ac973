"""Terminal implementation of :class:`~pkcesession.auth.host.AuthenticationHost`.

The CLI has no account menu or status bar, so the host capabilities map
onto the output module: the authorization URL is printed (and opened in
the default browser), the sign-in offer becomes a ``login`` suggestion,
and the signed-in indicator is kept as a flag the ``status`` command reads.
"""

from __future__ import annotations

import logging
import threading
import webbrowser

from pkcesession.auth.host import AuthenticationHost
from pkcesession.output import debug, info, suggest

logger = logging.getLogger(__name__)


class ConsoleHost(AuthenticationHost):
    """Host adapter for the command-line interface.

    Args:
        open_browser: Launch the system browser for the authorization URL
            in addition to printing it.
        offer_hint: Print a "run login" hint when the sign-in offer is
            registered.  Off for the login command itself.
    """

    def __init__(self, open_browser: bool = True, offer_hint: bool = True) -> None:
        self.open_browser = open_browser
        self.offer_hint = offer_hint
        self.signed_in = False
        self.offer_visible = False

    def open_external_url(self, url: str) -> None:
        info("Open this URL in your browser to sign in:")
        info(url)
        if self.open_browser:
            # webbrowser.open can block on some platforms
            threading.Thread(target=self._launch, args=(url,), daemon=True).start()

    def register_offer_sign_in(self, provider_id: str) -> None:
        if self.offer_hint and not self.offer_visible:
            suggest(f"Not signed in to '{provider_id}'. Run 'pkcesession login' to sign in.")
        self.offer_visible = True

    def withdraw_offer_sign_in(self, provider_id: str) -> None:
        self.offer_visible = False

    def notify_sessions_changed(self, provider_id: str) -> None:
        debug(f"Sessions changed for provider '{provider_id}'")

    def set_signed_in(self, provider_id: str, signed_in: bool) -> None:
        self.signed_in = signed_in

    @staticmethod
    def _launch(url: str) -> None:
        try:
            if not webbrowser.open(url):
                logger.info("No browser available; open the URL manually")
        except webbrowser.Error as exc:
            logger.warning("Could not launch a browser: %s", exc)
