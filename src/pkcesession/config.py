"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for pkcesession:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.pkcesession/`` on macOS and Windows.  See :func:`get_config_dir`
  and :func:`get_data_dir`.
* **Global config** -- A single :class:`~pkcesession.models.GlobalConfig`
  JSON file holding named provider settings and output defaults.
* **Precedence resolution** -- :func:`resolve_settings` merges CLI flags,
  ``OAUTH_*`` environment variables, project-local config, and global
  config into one :class:`~pkcesession.models.ProviderSettings`.
* **Credential resolution** -- :func:`resolve_credential` reads the client
  secret from an env var, a file, or an interactive prompt.
* **Client configuration** -- :func:`build_oauth2_config` turns settings
  into an immutable :class:`~pkcesession.models.OAuth2Config`, discovering
  server metadata from the issuer when endpoints are not given.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`).
"""

from __future__ import annotations

import getpass
import json
import os
import platform
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from pkcesession.exceptions import ConfigError
from pkcesession.models import (
    AuthorizationServerMetadata,
    GlobalConfig,
    OAuth2Config,
    ProviderSettings,
)

_APP_NAME = "pkcesession"
_CONFIG_FILENAME = "config.json"
_PROJECT_CONFIG_FILENAME = "pkcesession.json"
_DEFAULT_PROVIDER = "default"

_ENV_SETTINGS = {
    "OAUTH_ISSUER": "issuer",
    "OAUTH_AUTH_ENDPOINT": "authorization_endpoint",
    "OAUTH_TOKEN_ENDPOINT": "token_endpoint",
    "OAUTH_REVOCATION_ENDPOINT": "revocation_endpoint",
    "OAUTH_CLIENT_ID": "client_id",
    "OAUTH_REDIRECT_URI": "redirect_uri",
}


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/pkcesession/`` (default
    ``~/.config/pkcesession/``).  On macOS/Windows: ``~/.pkcesession/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (session snapshots, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/pkcesession/`` (default
    ``~/.local/share/pkcesession/``).  On macOS/Windows:
    ``~/.pkcesession/data/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file lives in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems.  On any failure
    the temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Global config ---


def _global_config_path() -> Path:
    return get_config_dir() / _CONFIG_FILENAME


def load_global_config() -> GlobalConfig:
    """Load the global configuration.

    Returns:
        The deserialised :class:`~pkcesession.models.GlobalConfig`, or a
        default instance if the file does not exist.

    Raises:
        ConfigError: If the file contains invalid JSON or fails validation.
    """
    path = _global_config_path()
    if not path.is_file():
        return GlobalConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return GlobalConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(config: GlobalConfig) -> None:
    """Persist the global configuration atomically."""
    data = config.model_dump(mode="json", exclude_defaults=True)
    _atomic_write(_global_config_path(), json.dumps(data, indent=2) + "\n")


# --- Project-local config ---


def load_project_config() -> Optional[dict[str, Any]]:
    """Load project-local configuration from ``./pkcesession.json``.

    The file has the same shape as the global config (``default_provider``
    and ``providers``) and overrides it key by key.

    Returns:
        The parsed JSON object, or ``None`` if the file does not exist.

    Raises:
        ConfigError: If the file is not a JSON object.
    """
    path = Path.cwd() / _PROJECT_CONFIG_FILENAME
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid project config at {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid project config at {path}: expected a JSON object")
    return data


# --- Precedence resolution ---


def _env_settings() -> dict[str, Any]:
    """Collect provider settings from ``OAUTH_*`` environment variables."""
    values: dict[str, Any] = {}
    for var, field in _ENV_SETTINGS.items():
        value = os.environ.get(var)
        if value:
            values[field] = value
    if os.environ.get("OAUTH_CLIENT_SECRET"):
        values["client_secret_source"] = "env:OAUTH_CLIENT_SECRET"
    scopes = os.environ.get("OAUTH_SCOPES")
    if scopes:
        values["scopes"] = scopes.replace(",", " ").split()
    return values


def resolve_provider_name(cli_provider: Optional[str] = None) -> str:
    """Resolve which provider to use.

    Precedence (high to low): CLI flag, ``PKCESESSION_PROVIDER``, project
    ``default_provider``, global ``default_provider``, ``"default"``.
    """
    if cli_provider:
        return cli_provider
    env_provider = os.environ.get("PKCESESSION_PROVIDER")
    if env_provider:
        return env_provider
    project = load_project_config()
    if project and project.get("default_provider"):
        return str(project["default_provider"])
    global_cfg = load_global_config()
    if global_cfg.default_provider:
        return global_cfg.default_provider
    return _DEFAULT_PROVIDER


def resolve_settings(
    cli_provider: Optional[str] = None,
    cli_overrides: Optional[dict[str, Any]] = None,
) -> ProviderSettings:
    """Resolve provider settings with the full precedence chain.

    Precedence (high to low):
        1. CLI flags (*cli_overrides*, ``None`` values ignored)
        2. Environment variables (``OAUTH_ISSUER``, ``OAUTH_CLIENT_ID``, ...)
        3. Project config (``./pkcesession.json``)
        4. User config (``~/.config/pkcesession/config.json``)
        5. Defaults

    Raises:
        ConfigError: If a config file is invalid or the merged settings
            fail validation.
    """
    name = resolve_provider_name(cli_provider)
    merged: dict[str, Any] = {}

    global_cfg = load_global_config()
    if name in global_cfg.providers:
        merged.update(global_cfg.providers[name].model_dump(exclude_unset=True))

    project = load_project_config()
    if project:
        project_provider = (project.get("providers") or {}).get(name)
        if isinstance(project_provider, dict):
            merged.update(project_provider)

    merged.update(_env_settings())

    if cli_overrides:
        merged.update({k: v for k, v in cli_overrides.items() if v is not None})

    merged["provider_id"] = name
    try:
        return ProviderSettings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings for provider '{name}': {exc}") from exc


# --- Credential source resolution ---


def resolve_credential(source: str) -> str:
    """Resolve a credential from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace
        - ``"prompt"`` -- prompts interactively (requires a TTY)

    Raises:
        ConfigError: If the source can't be resolved.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set (source: {source})")
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    if source == "prompt":
        if not sys.stdin.isatty():
            raise ConfigError("Cannot prompt for client secret: stdin is not a TTY (source: prompt)")
        return getpass.getpass("Client secret: ")

    raise ConfigError(f"Unknown credential source format: {source}")


# --- OAuth2 client configuration ---


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def build_oauth2_config(settings: ProviderSettings) -> OAuth2Config:
    """Build the immutable client configuration for *settings*.

    When both endpoints are configured they are used as-is.  Otherwise the
    issuer's metadata is discovered over HTTPS and explicitly configured
    endpoints override the discovered ones.

    Raises:
        ConfigError: If ``client_id`` is missing, neither endpoints nor an
            issuer are configured, or discovery finds nothing usable.
        NetworkError: If discovery cannot reach the issuer.
    """
    if not settings.client_id:
        raise ConfigError(
            f"Provider '{settings.provider_id}' has no client_id (set OAUTH_CLIENT_ID or run 'config init')"
        )

    explicit = {
        key: value
        for key, value in (
            ("authorization_endpoint", settings.authorization_endpoint),
            ("token_endpoint", settings.token_endpoint),
            ("revocation_endpoint", settings.revocation_endpoint),
        )
        if value
    }

    try:
        if settings.authorization_endpoint and settings.token_endpoint:
            metadata = AuthorizationServerMetadata(
                issuer=settings.issuer or _origin(settings.authorization_endpoint),
                **explicit,
            )
        elif settings.issuer:
            from pkcesession.auth.client import discover_metadata

            metadata = discover_metadata(settings.issuer, timeout=settings.request_timeout)
            if explicit:
                metadata = AuthorizationServerMetadata.model_validate(
                    {**metadata.model_dump(), **explicit}
                )
        else:
            raise ConfigError(
                f"Provider '{settings.provider_id}' needs either an issuer or both "
                "authorization and token endpoints"
            )

        client_secret = (
            resolve_credential(settings.client_secret_source)
            if settings.client_secret_source
            else None
        )

        return OAuth2Config(
            client_id=settings.client_id,
            client_secret=client_secret,
            server_metadata=metadata,
            redirect_uri=settings.redirect_uri,
            scopes=tuple(settings.scopes),
            extra_auth_params=settings.extra_auth_params,
            request_timeout=settings.request_timeout,
            revocation_timeout=settings.revocation_timeout,
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid OAuth2 configuration for '{settings.provider_id}': {exc}") from exc
