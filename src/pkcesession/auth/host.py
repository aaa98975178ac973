"""Abstract host capability surface consumed by the coordinator.

A *host* is whatever embeds the authentication core: an editor, a desktop
shell, or the bundled CLI.  It owns the user-visible chrome (a sign-in
menu entry, an account badge, a "signed in" context flag) and the ability
to open URLs.  The coordinator only ever talks to it through
:class:`AuthenticationHost`.

Hosts are assumed to be loosely specified: their own change events carry
no payload, and a request to offer sign-in may be dropped if it races with
the host tearing down the previous offer.  The coordinator therefore
re-issues offers after every sign-out rather than trusting the host to
remember them.

See Also:
    :mod:`pkcesession.console_host` for the terminal implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class AuthenticationHost(ABC):
    """Base class for hosts that display sign-in state.

    Subclasses must implement the four abstract operations.  All of them
    must be idempotent: the coordinator may call them redundantly.
    """

    @abstractmethod
    def open_external_url(self, url: str) -> None:
        """Send the user to *url* (typically by opening a browser)."""
        ...

    @abstractmethod
    def register_offer_sign_in(self, provider_id: str) -> None:
        """Ask the host to show a "sign in" affordance for *provider_id*.

        May raise if the host cannot accept the request right now; the
        coordinator retries.
        """
        ...

    @abstractmethod
    def withdraw_offer_sign_in(self, provider_id: str) -> None:
        """Ask the host to hide the sign-in affordance for *provider_id*."""
        ...

    @abstractmethod
    def notify_sessions_changed(self, provider_id: str) -> None:
        """Tell the host that sessions for *provider_id* changed (no payload)."""
        ...

    def set_signed_in(self, provider_id: str, signed_in: bool) -> None:
        """Mirror the signed-in indicator into host state (e.g. a context key).

        The default implementation does nothing.
        """
