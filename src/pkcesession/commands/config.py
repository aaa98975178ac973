"""Config commands -- view and create provider configuration.

Provides the ``pkcesession config`` sub-command group.  Provider settings
(:class:`~pkcesession.models.ProviderSettings`) live in the global config
file; ``config show`` prints the settings the other commands would
actually use, after environment variables and the project file have been
layered on top.
"""

from __future__ import annotations

from typing import Optional

import typer

from pkcesession.exit_codes import EXIT_INVALID_USAGE
from pkcesession.output import error, info, print_record, success, suggest


config_app = typer.Typer(no_args_is_help=True)


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Show the effective settings for the active provider.

    Example::

        pkcesession config show
        pkcesession --provider work --json config show
    """
    from pkcesession.config import get_config_dir, resolve_settings
    from pkcesession.exceptions import PkceSessionError

    obj = ctx.obj or {}
    try:
        settings = resolve_settings(obj.get("provider"))
    except PkceSessionError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    info(f"Config directory: {get_config_dir()}")
    print_record(settings.model_dump(mode="json"), title=f"Provider '{settings.provider_id}'")
    if not settings.client_id:
        suggest("Create a provider: pkcesession config init")


@config_app.command("init")
def config_init(
    name: str = typer.Option("default", "--name", "-n", help="Provider name."),
    issuer: Optional[str] = typer.Option(None, "--issuer", help="Issuer URL (enables discovery)."),
    client_id: Optional[str] = typer.Option(None, "--client-id", help="OAuth2 client id."),
    authorization_endpoint: Optional[str] = typer.Option(
        None, "--auth-endpoint", help="Authorization endpoint (overrides discovery)."
    ),
    token_endpoint: Optional[str] = typer.Option(
        None, "--token-endpoint", help="Token endpoint (overrides discovery)."
    ),
    revocation_endpoint: Optional[str] = typer.Option(
        None, "--revocation-endpoint", help="Revocation endpoint (overrides discovery)."
    ),
    client_secret_source: Optional[str] = typer.Option(
        None,
        "--client-secret-source",
        help="Where to read the client secret: env:VAR, file:/path, or prompt.",
    ),
    redirect_uri: Optional[str] = typer.Option(None, "--redirect-uri", help="Redirect URI."),
    scopes: Optional[list[str]] = typer.Option(
        None, "--scope", "-s", help="Scope to request (repeatable)."
    ),
    make_default: bool = typer.Option(
        False, "--default", help="Make this the default provider."
    ),
) -> None:
    """Create or overwrite a provider in the global config.

    Prompts for the client id, and for the issuer when no endpoints are
    given.  The first provider created becomes the default.

    Example::

        pkcesession config init --issuer https://accounts.google.com --client-id abc
        pkcesession config init --name work --auth-endpoint https://idp/authorize \\
            --token-endpoint https://idp/token --client-id cli --scope openid
    """
    from pydantic import ValidationError

    from pkcesession.config import get_config_dir, load_global_config, save_global_config
    from pkcesession.exceptions import PkceSessionError
    from pkcesession.models import ProviderSettings

    if not client_id:
        client_id = typer.prompt("Client id")
    if not issuer and not (authorization_endpoint and token_endpoint):
        issuer = typer.prompt("Issuer URL")

    values = {
        "issuer": issuer,
        "client_id": client_id,
        "authorization_endpoint": authorization_endpoint,
        "token_endpoint": token_endpoint,
        "revocation_endpoint": revocation_endpoint,
        "client_secret_source": client_secret_source,
        "redirect_uri": redirect_uri,
        "scopes": scopes or None,
    }
    try:
        settings = ProviderSettings.model_validate(
            {"provider_id": name, **{k: v for k, v in values.items() if v is not None}}
        )
    except ValidationError as exc:
        error(f"Invalid provider settings: {exc}")
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None

    try:
        config = load_global_config()
    except PkceSessionError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if name in config.providers:
        info(f'Provider "{name}" already exists and will be overwritten.')
    config.providers[name] = settings
    if make_default or not config.default_provider:
        config.default_provider = name
    save_global_config(config)

    success(f'Provider "{name}" saved to {get_config_dir()}.')
    suggest(f"Sign in: pkcesession --provider {name} login")
