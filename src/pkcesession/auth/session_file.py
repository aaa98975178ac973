"""Persistent session snapshot scoped per provider.

Stores the coordinator's sessions in
``~/.local/share/pkcesession/sessions/<provider>.json`` (XDG) or the
platform-equivalent directory, so a short-lived host such as the CLI can
pick up where the previous process left off.  Files are written atomically
via :func:`tempfile.NamedTemporaryFile` and ``os.replace`` with ``0o600``
permissions so that tokens are never world-readable, even momentarily.

Tokens are stored in plain JSON; encryption at rest is left to the
operating system's file permissions.

See Also:
    :class:`~pkcesession.auth.coordinator.SessionCoordinator` -- the only
    writer, which saves a snapshot after every store mutation.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from pkcesession.config import get_data_dir
from pkcesession.models import Session

logger = logging.getLogger(__name__)


class SessionSnapshot(BaseModel):
    """On-disk document: the provider id and its sessions in insertion order."""

    version: int = 1
    provider_id: str
    sessions: list[Session] = Field(default_factory=list)


def _sessions_dir() -> Path:
    """Return the sessions directory, creating it if needed."""
    path = get_data_dir() / "sessions"
    path.mkdir(parents=True, exist_ok=True)
    return path


class SessionFile:
    """Read/write the session snapshot for a single provider.

    All writes are atomic: content is written to a temporary file in the
    same directory, fsynced, then renamed into place.

    Args:
        provider_id: The provider identifier used to derive the file name.
        path: Explicit file location, overriding the data directory.

    Example::

        snapshot = SessionFile("default")
        snapshot.save([session])
        assert snapshot.load()[0].id == session.id
    """

    def __init__(self, provider_id: str, path: Optional[Path] = None) -> None:
        self._provider_id = provider_id
        self._path = path if path is not None else _sessions_dir() / f"{provider_id}.json"

    @property
    def path(self) -> Path:
        """The filesystem path of this provider's snapshot."""
        return self._path

    def save(self, sessions: list[Session]) -> None:
        """Persist *sessions* atomically with ``0o600`` permissions.

        Raises:
            OSError: If the file cannot be written.
        """
        snapshot = SessionSnapshot(provider_id=self._provider_id, sessions=sessions)
        text = json.dumps(snapshot.model_dump(mode="json"), indent=2) + "\n"

        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd = None
        tmp_path: Optional[str] = None
        try:
            fd = tempfile.NamedTemporaryFile(
                mode="w",
                dir=self._path.parent,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            )
            tmp_path = fd.name
            # Restrict permissions before any token hits the disk
            os.chmod(tmp_path, 0o600)
            fd.write(text)
            fd.flush()
            os.fsync(fd.fileno())
            fd.close()
            fd = None
            os.replace(tmp_path, self._path)
        except BaseException:
            if fd is not None:
                fd.close()
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise

    def load(self) -> list[Session]:
        """Load the stored sessions.

        Returns:
            The sessions in their saved order.  An absent, unreadable, or
            malformed file, or one written for another provider, yields an
            empty list.
        """
        if not self._path.is_file():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            snapshot = SessionSnapshot.model_validate(data)
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable session snapshot %s: %s", self._path, exc)
            return []
        if snapshot.provider_id != self._provider_id:
            logger.warning(
                "Ignoring session snapshot %s written for provider '%s'",
                self._path,
                snapshot.provider_id,
            )
            return []
        return snapshot.sessions

    def clear(self) -> None:
        """Delete the snapshot file if it exists."""
        if self._path.is_file():
            self._path.unlink()
