"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to an error category and is referenced by the
corresponding :class:`~pkcesession.exceptions.PkceSessionError` subclass.
Shell wrappers can branch on the exit code without parsing stderr.

Example::

    $ pkcesession login --timeout 60
    $ echo $?
    8   # EXIT_FLOW_INCOMPLETE -- nobody finished the sign-in in time
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments."""

EXIT_AUTH_FAILURE = 3
"""The authorization server rejected a request, or re-authentication is required."""

EXIT_NOT_FOUND = 4
"""A session id did not exist, or a session id was reused."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, TLS, connection refused)."""

EXIT_FLOW_INCOMPLETE = 8
"""A sign-in flow timed out, was cancelled, or was denied at the authorization server."""

EXIT_SECURITY_REJECTION = 9
"""A redirect callback was rejected (unknown or already consumed ``state``)."""
