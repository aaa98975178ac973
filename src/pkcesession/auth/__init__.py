"""Authentication core: PKCE, OAuth2 client, session store, coordinator.

The main entry points are:

- :class:`SessionCoordinator` -- the sign-in/sign-out state machine a host
  drives.
- :class:`OAuth2Client` -- Authorization Code + PKCE protocol client.
- :class:`SessionStore` -- the in-memory session table.
- :class:`AuthenticationHost` -- the abstract host capability surface.
- :class:`CallbackServer` -- loopback redirect receiver for native hosts.

Typical usage::

    from pkcesession.auth import SessionCoordinator

    coordinator = SessionCoordinator(config, host=my_host)
    coordinator.restore()
    session = coordinator.create_session(timeout=300)
"""

from pkcesession.auth.callback_server import CallbackServer
from pkcesession.auth.client import OAuth2Client, discover_metadata, parse_redirect
from pkcesession.auth.coordinator import SessionCoordinator, SignInAttempt
from pkcesession.auth.host import AuthenticationHost
from pkcesession.auth.session_file import SessionFile
from pkcesession.auth.store import SessionStore, SessionStoreView

__all__ = [
    "AuthenticationHost",
    "CallbackServer",
    "OAuth2Client",
    "SessionCoordinator",
    "SessionFile",
    "SessionStore",
    "SessionStoreView",
    "SignInAttempt",
    "discover_metadata",
    "parse_redirect",
]
