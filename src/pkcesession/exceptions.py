"""Exception hierarchy for pkcesession.

All exceptions inherit from :class:`PkceSessionError`, which carries an
``exit_code`` attribute mapped to a constant from
:mod:`pkcesession.exit_codes`.  The CLI entry point in
:func:`pkcesession.app.main` catches ``PkceSessionError`` and exits with the
matching code; unexpected exceptions produce a crash log instead.

Subclass hierarchy::

    PkceSessionError (exit 1)
    +-- ConfigError              (exit 1)
    +-- NetworkError             (exit 6)
    +-- AuthServerError          (exit 3)
    +-- NoRefreshTokenError      (exit 3)
    +-- FlowError                (exit 8)
    |   +-- FlowTimedOut
    |   +-- FlowCancelled
    |   +-- FlowFailed
    +-- SecurityRejection        (exit 9)
    |   +-- StateMismatchError
    |   +-- FlowAlreadyConsumed
    +-- SessionStoreError        (exit 4)
        +-- DuplicateSessionError
        +-- SessionNotFoundError
"""

from __future__ import annotations

from typing import Optional

from pkcesession.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONNECTION_ERROR,
    EXIT_FLOW_INCOMPLETE,
    EXIT_GENERIC_FAILURE,
    EXIT_NOT_FOUND,
    EXIT_SECURITY_REJECTION,
)


class PkceSessionError(Exception):
    """Base exception for all pkcesession errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`pkcesession.exit_codes`.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(PkceSessionError):
    """Raised for configuration problems (missing endpoints, invalid JSON, bad credential sources)."""

    exit_code = EXIT_GENERIC_FAILURE


class NetworkError(PkceSessionError):
    """Raised on transport failures talking to the authorization server.

    Timeouts, DNS resolution failures, TLS errors and refused connections
    all end up here.  The client never retries on its own; callers may
    retry a refresh, but must not blindly retry a code exchange because
    authorization codes are single-use.
    """

    exit_code = EXIT_CONNECTION_ERROR


class AuthServerError(PkceSessionError):
    """Raised when the authorization server rejects a request.

    Args:
        error_code: The OAuth2 ``error`` value (e.g. ``"invalid_grant"``),
            or a synthetic code such as ``"http_error"`` or
            ``"invalid_response"`` when the server sent none.
        description: The server's ``error_description``, if any.
        status_code: The HTTP status of the response, if one was received.
    """

    exit_code = EXIT_AUTH_FAILURE

    def __init__(
        self,
        error_code: str,
        description: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        message = f"Authorization server error: {error_code}"
        if description:
            message += f" - {description}"
        if status_code is not None:
            message += f" (HTTP {status_code})"
        super().__init__(message)
        self.error_code = error_code
        self.description = description
        self.status_code = status_code


class NoRefreshTokenError(PkceSessionError):
    """Raised when an expired session has no refresh token and must sign in again."""

    exit_code = EXIT_AUTH_FAILURE


class FlowError(PkceSessionError):
    """Base class for sign-in flows that ended without a session."""

    exit_code = EXIT_FLOW_INCOMPLETE


class FlowTimedOut(FlowError):
    """Raised when nobody completed the authorization step before the flow timeout."""


class FlowCancelled(FlowError):
    """Raised when a pending sign-in flow is abandoned explicitly."""


class FlowFailed(FlowError):
    """Raised when the redirect carries an ``error`` parameter.

    Args:
        error_code: The ``error`` query parameter (e.g. ``"access_denied"``).
        description: The ``error_description`` query parameter, if present.
    """

    def __init__(self, error_code: str, description: Optional[str] = None):
        message = f"Sign-in failed: {error_code}"
        if description:
            message += f" - {description}"
        super().__init__(message)
        self.error_code = error_code
        self.description = description


class SecurityRejection(PkceSessionError):
    """Base class for redirect callbacks rejected for security reasons."""

    exit_code = EXIT_SECURITY_REJECTION


class StateMismatchError(SecurityRejection):
    """Raised when a redirect's ``state`` matches no pending flow."""


class FlowAlreadyConsumed(SecurityRejection):
    """Raised when a redirect's ``state`` belongs to a flow that already resolved."""


class SessionStoreError(PkceSessionError):
    """Base class for session store contract violations."""

    exit_code = EXIT_NOT_FOUND


class DuplicateSessionError(SessionStoreError):
    """Raised when a session id is already present in the store."""


class SessionNotFoundError(SessionStoreError):
    """Raised when a session id is not present in the store."""
