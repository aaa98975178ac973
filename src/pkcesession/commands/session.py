"""Session commands -- sign in, sign out, and inspect sessions.

Implements the top-level ``login``, ``logout``, ``status``, ``sessions``
and ``token`` commands.  Each command resolves the active provider's
settings, builds a :class:`~pkcesession.auth.coordinator.SessionCoordinator`
wired to a :class:`~pkcesession.console_host.ConsoleHost`, restores the
on-disk session snapshot, and then drives the coordinator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

import typer

from pkcesession.exit_codes import EXIT_GENERIC_FAILURE, EXIT_NOT_FOUND
from pkcesession.output import error, info, print_data, print_record, print_table, success, suggest

if TYPE_CHECKING:
    from pkcesession.auth import SessionCoordinator
    from pkcesession.models import ProviderSettings, Session


def _open_coordinator(
    ctx: typer.Context,
    open_browser: bool = False,
    offer_hint: bool = True,
    flow_timeout: Optional[float] = None,
) -> tuple[ProviderSettings, SessionCoordinator]:
    """Resolve settings and return a restored ``(settings, coordinator)`` pair.

    Raises:
        typer.Exit: With the error's exit code if the configuration cannot
            be resolved.
    """
    from pkcesession.auth import SessionCoordinator, SessionFile
    from pkcesession.config import build_oauth2_config, resolve_settings
    from pkcesession.console_host import ConsoleHost
    from pkcesession.exceptions import PkceSessionError

    obj = ctx.obj or {}
    try:
        settings = resolve_settings(obj.get("provider"))
        config = build_oauth2_config(settings)
    except PkceSessionError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    host = ConsoleHost(open_browser=open_browser, offer_hint=offer_hint)
    coordinator = SessionCoordinator(
        config,
        host,
        provider_id=settings.provider_id,
        session_file=SessionFile(settings.provider_id) if settings.persist_sessions else None,
        flow_timeout=flow_timeout if flow_timeout is not None else settings.flow_timeout,
        default_account_label=settings.account_label,
    )
    coordinator.restore()
    return settings, coordinator


def _session_record(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "account": session.account_label,
        "scopes": list(session.scopes),
        "expires_at": session.tokens.expires_at.isoformat(),
        "usable": session.is_usable(),
    }


def login_command(
    ctx: typer.Context,
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the authorization URL without opening a browser."
    ),
    paste: bool = typer.Option(
        False, "--paste", help="Paste the redirect URL instead of running a loopback server."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", min=1, help="Seconds to wait for the sign-in redirect."
    ),
) -> None:
    """Sign in with the Authorization Code + PKCE flow.

    Opens the provider's authorization page and waits for the redirect,
    either on a loopback server bound to the configured redirect URI or,
    with ``--paste`` (or a non-loopback redirect URI), by asking for the
    URL the browser ended up on.  A successful sign-in replaces any
    existing session for the provider.

    Example::

        pkcesession login
        pkcesession --provider work login --no-browser
        pkcesession login --paste
    """
    from pkcesession.auth.callback_server import CallbackServer, is_loopback_redirect
    from pkcesession.exceptions import PkceSessionError

    settings, coordinator = _open_coordinator(
        ctx, open_browser=not no_browser, offer_hint=False, flow_timeout=timeout
    )

    try:
        if paste or not is_loopback_redirect(settings.redirect_uri):
            coordinator.begin_sign_in()
            redirect = typer.prompt("Paste the URL your browser was redirected to")
            session = coordinator.handle_redirect(redirect.strip())
        else:
            with CallbackServer(coordinator, settings.redirect_uri):
                attempt = coordinator.begin_sign_in()
                info("Waiting for the sign-in redirect...")
                session = attempt.result()
    except PkceSessionError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    except OSError as exc:
        error(f"Could not listen on {settings.redirect_uri}: {exc}")
        suggest("Free the port, change redirect_uri, or use --paste")
        raise typer.Exit(code=EXIT_GENERIC_FAILURE) from None
    finally:
        coordinator.close()

    success(f"Signed in as {session.account_label}")
    print_record(_session_record(session), title="Session")


def logout_command(
    ctx: typer.Context,
    session_id: Optional[str] = typer.Argument(
        None, help="Session to remove (default: all sessions)."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Sign out, removing one session or all of them.

    Removed sessions are deleted locally first; their tokens are then
    revoked at the authorization server when it supports revocation.

    Example::

        pkcesession logout
        pkcesession logout 3f0c... --yes
    """
    _settings, coordinator = _open_coordinator(ctx)

    if coordinator.sessions.is_empty():
        info("Not signed in.")
        return

    if session_id is not None and session_id not in coordinator.sessions:
        error(f"No session '{session_id}'")
        raise typer.Exit(code=EXIT_NOT_FOUND)

    if not yes:
        target = f"session {session_id}" if session_id else "all sessions"
        confirm = typer.confirm(f"Sign out of {target}?")
        if not confirm:
            info("Cancelled.")
            raise typer.Exit()

    if session_id is not None:
        coordinator.remove_session(session_id)
        success(f"Removed session {session_id}.")
    else:
        removed = coordinator.sign_out()
        success(f"Signed out ({len(removed)} session(s) removed).")


def status_command(ctx: typer.Context) -> None:
    """Show whether the active provider is signed in.

    Example::

        pkcesession status
        pkcesession --json status
    """
    settings, coordinator = _open_coordinator(ctx)
    sessions = coordinator.list_sessions()
    print_record(
        {
            "provider": settings.provider_id,
            "signed_in": coordinator.is_signed_in,
            "sessions": len(sessions),
            "accounts": [s.account_label for s in sessions],
        },
        title="Status",
    )


def sessions_command(ctx: typer.Context) -> None:
    """List the stored sessions for the active provider."""
    _settings, coordinator = _open_coordinator(ctx, offer_hint=False)
    rows = []
    for session in coordinator.list_sessions():
        record = _session_record(session)
        rows.append(
            [
                record["id"],
                record["account"],
                " ".join(record["scopes"]),
                record["expires_at"],
                "yes" if record["usable"] else "no",
            ]
        )
    print_table(["id", "account", "scopes", "expires_at", "usable"], rows, title="Sessions")
    if not rows:
        suggest("Run 'pkcesession login' to sign in.")


def token_command(
    ctx: typer.Context,
    session_id: Optional[str] = typer.Argument(
        None, help="Session to use (default: the first session)."
    ),
) -> None:
    """Print a valid access token, refreshing it if it has expired.

    The token is written to stdout alone so it can be captured::

        curl -H "Authorization: Bearer $(pkcesession token)" https://api.example.com/me
    """
    from pkcesession.exceptions import PkceSessionError

    _settings, coordinator = _open_coordinator(ctx, offer_hint=False)
    try:
        token = coordinator.access_token(session_id)
    except PkceSessionError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    print_data(token)
