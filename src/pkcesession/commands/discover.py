"""Discover command -- fetch an issuer's authorization server metadata."""

from __future__ import annotations

import typer

from pkcesession.output import error, print_record, success


def discover_command(
    issuer: str = typer.Argument(help="Issuer URL, or the full URL of a metadata document."),
    timeout: float = typer.Option(30.0, "--timeout", min=1, help="Request timeout in seconds."),
) -> None:
    """Show the authorization server metadata published by *issuer*.

    Tries ``/.well-known/oauth-authorization-server`` (:rfc:`8414`) and
    then ``/.well-known/openid-configuration``.

    Example::

        pkcesession discover https://accounts.google.com
        pkcesession --json discover https://login.example.com
    """
    from pkcesession.auth.client import discover_metadata
    from pkcesession.exceptions import PkceSessionError

    try:
        metadata = discover_metadata(issuer, timeout=timeout)
    except PkceSessionError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    success(f"Discovered metadata for {metadata.issuer}")
    print_record(metadata.model_dump(mode="json", exclude_none=True), title="Authorization server")
