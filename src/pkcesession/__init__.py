"""pkcesession -- OAuth2 Authorization Code + PKCE sessions for any host.

This package drives a standards-compliant OAuth2 Authorization Code flow
with PKCE (:rfc:`7636`) to completion and keeps the resulting sessions in a
single in-memory table.  A coordinator owns the sign-in/sign-out state
machine and keeps a host's "signed in" indicator consistent with that
table, including after host-initiated removals that arrive without any
description of what changed.

Typical usage::

    from pkcesession.auth import OAuth2Client, SessionCoordinator

    coordinator = SessionCoordinator(oauth2_config, host=my_host)
    coordinator.restore()
    attempt = coordinator.begin_sign_in()
    # ... the host routes the redirect back ...
    coordinator.handle_redirect(redirect_uri)
    session = attempt.result(timeout=300)

Modules:
    app: Typer application and CLI entry point (a terminal host).
    models: Pydantic models shared across the package.
    config: XDG-aware configuration and provider settings resolution.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting with Rich support.
"""

__version__ = "0.1.0"
