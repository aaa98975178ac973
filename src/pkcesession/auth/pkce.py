"""PKCE primitives: code verifiers, S256 challenges and CSRF ``state`` nonces.

Everything here is pure and stateless.  Randomness comes from
:mod:`secrets`; if the operating system's entropy source fails the
resulting exception propagates, since there is nothing a caller could do
to recover from it.

See Also:
    :rfc:`7636` -- Proof Key for Code Exchange by OAuth Public Clients.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

from pkcesession.models import PendingFlow

VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128

_VERIFIER_ENTROPY_BYTES = 64
_STATE_ENTROPY_BYTES = 32


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def new_verifier() -> str:
    """Generate a PKCE ``code_verifier``.

    Returns:
        64 random bytes, base64url-encoded without padding (86 characters,
        inside the 43-128 range required by :rfc:`7636`).
    """
    return _b64url(secrets.token_bytes(_VERIFIER_ENTROPY_BYTES))


def challenge_for(verifier: str) -> str:
    """Derive the S256 ``code_challenge`` for *verifier*.

    Args:
        verifier: A code verifier produced by :func:`new_verifier`.

    Returns:
        ``base64url(SHA-256(verifier))`` without padding.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def new_state() -> str:
    """Generate a CSRF correlation token, independent of any verifier.

    Returns:
        32 random bytes (256 bits), base64url-encoded without padding.
    """
    return _b64url(secrets.token_bytes(_STATE_ENTROPY_BYTES))


def redact(secret: str | None) -> str:
    """Abbreviate a bearer-equivalent secret for log output.

    Only the first four characters and the length survive, which is enough
    to correlate log lines without making the value replayable.
    """
    if not secret:
        return "<none>"
    return f"{secret[:4]}...({len(secret)} chars)"


def new_flow() -> PendingFlow:
    """Create a :class:`~pkcesession.models.PendingFlow` with fresh secrets."""
    verifier = new_verifier()
    return PendingFlow(
        state=new_state(),
        code_verifier=verifier,
        code_challenge=challenge_for(verifier),
    )
