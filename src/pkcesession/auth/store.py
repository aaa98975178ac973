"""In-memory session table: the single source of truth for "signed in".

:class:`SessionStore` maps session ids to
:class:`~pkcesession.models.Session` objects in insertion order.  Only the
:class:`~pkcesession.auth.coordinator.SessionCoordinator` writes to it;
every other component receives a :class:`SessionStoreView`, which exposes
the read operations only.

The store itself is a plain data structure.  It does not notify anyone:
change notifications and indicator reconciliation happen in the
coordinator, after each mutation.
"""

from __future__ import annotations

import threading
from typing import Iterator, Optional

from pkcesession.exceptions import DuplicateSessionError, SessionNotFoundError
from pkcesession.models import Session


class SessionStore:
    """Thread-safe mapping of session id to :class:`~pkcesession.models.Session`.

    Although the single-account configuration only ever holds one
    session, nothing here assumes that.

    Example::

        store = SessionStore()
        store.put(session)
        assert store.get(session.id) is session
        store.remove(session.id)
        store.remove(session.id)  # no-op
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.RLock()

    def put(self, session: Session) -> None:
        """Insert a new session.

        Raises:
            DuplicateSessionError: If a session with the same id exists.
        """
        with self._lock:
            if session.id in self._sessions:
                raise DuplicateSessionError(f"Session '{session.id}' already exists")
            self._sessions[session.id] = session

    def replace(self, session: Session) -> Session:
        """Swap in a new version of an existing session, keeping its position.

        Returns:
            The session that was replaced.

        Raises:
            SessionNotFoundError: If no session with that id exists.
        """
        with self._lock:
            previous = self._sessions.get(session.id)
            if previous is None:
                raise SessionNotFoundError(f"Session '{session.id}' not found")
            self._sessions[session.id] = session
            return previous

    def get(self, session_id: str) -> Session:
        """Return the session with *session_id*.

        Raises:
            SessionNotFoundError: If it does not exist.
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        return session

    def list(self) -> list[Session]:
        """Return all sessions in insertion order."""
        with self._lock:
            return list(self._sessions.values())

    def remove(self, session_id: str) -> Optional[Session]:
        """Delete a session if present.

        Returns:
            The removed session, or ``None`` if the id was unknown.
        """
        with self._lock:
            return self._sessions.pop(session_id, None)

    def clear(self) -> list[Session]:
        """Remove every session and return them in insertion order."""
        with self._lock:
            removed = list(self._sessions.values())
            self._sessions.clear()
            return removed

    def is_empty(self) -> bool:
        with self._lock:
            return not self._sessions

    def view(self) -> SessionStoreView:
        """Return a read-only view over this store."""
        return SessionStoreView(self)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(self.list())


class SessionStoreView:
    """Read-only facade over a :class:`SessionStore`."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def get(self, session_id: str) -> Session:
        return self._store.get(session_id)

    def list(self) -> list[Session]:
        return self._store.list()

    def is_empty(self) -> bool:
        return self._store.is_empty()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._store
