"""Session lifecycle coordinator -- the sign-in/sign-out state machine.

:class:`SessionCoordinator` ties the pieces together:

* it owns the single *pending slot* holding at most one
  :class:`~pkcesession.models.PendingFlow`;
* it is the only writer of the :class:`~pkcesession.auth.store.SessionStore`;
* it correlates redirect callbacks with the pending flow by ``state``;
* it delivers :class:`~pkcesession.models.SessionsChangeEvent` payloads to
  listeners, in store-mutation order;
* it reconciles the host's "signed in" indicator and sign-in offer with the
  store after every mutation.

States are derived, never tracked separately::

    SIGNED_OUT --begin_sign_in--> FLOW_PENDING --redirect(code)--> SIGNED_IN
        ^                             |                               |
        +--timeout/cancel/error-------+                               |
        +--------------remove_session / sign_out----------------------+

Concurrent sign-in requests join the in-flight attempt: a second
:meth:`~SessionCoordinator.begin_sign_in` while a flow is pending returns
the same :class:`SignInAttempt`.

See Also:
    :class:`~pkcesession.auth.host.AuthenticationHost` for the host side.
"""

from __future__ import annotations

import hmac
import logging
import threading
import uuid
from concurrent.futures import Future
from time import monotonic
from typing import Callable, Optional

from pkcesession.auth.client import OAuth2Client, parse_redirect
from pkcesession.auth.host import AuthenticationHost
from pkcesession.auth.pkce import new_flow, redact
from pkcesession.auth.session_file import SessionFile
from pkcesession.auth.store import SessionStore, SessionStoreView
from pkcesession.exceptions import (
    AuthServerError,
    FlowAlreadyConsumed,
    FlowCancelled,
    FlowFailed,
    FlowTimedOut,
    NetworkError,
    NoRefreshTokenError,
    PkceSessionError,
    SessionNotFoundError,
    StateMismatchError,
)
from pkcesession.models import (
    OAuth2Config,
    PendingFlow,
    RedirectParams,
    Session,
    SessionsChangeEvent,
    SignInState,
    TokenSet,
)

logger = logging.getLogger(__name__)

SessionsListener = Callable[[SessionsChangeEvent], None]

_ACCOUNT_CLAIMS = ("email", "preferred_username", "name", "sub")

_CONSUMED_STATE_MIN_AGE = 60.0


class SignInAttempt:
    """Handle on one sign-in flow, shared by every caller that joined it.

    Args:
        authorization_url: Where the user must go to authorize the client.
    """

    def __init__(self, authorization_url: str) -> None:
        self.authorization_url = authorization_url
        self._future: Future[Session] = Future()

    def result(self, timeout: Optional[float] = None) -> Session:
        """Block until the flow resolves and return the new session.

        Args:
            timeout: Seconds to wait.  This bounds the *wait*, not the
                flow; the flow keeps its own timeout.

        Raises:
            FlowTimedOut, FlowCancelled, FlowFailed: The flow ended
                without a session.
            AuthServerError, NetworkError: The code exchange failed.
            TimeoutError: *timeout* elapsed before the flow resolved.
        """
        return self._future.result(timeout)

    def done(self) -> bool:
        return self._future.done()

    def add_done_callback(self, fn: Callable[[SignInAttempt], None]) -> None:
        """Call *fn* with this attempt once it resolves."""
        self._future.add_done_callback(lambda _future: fn(self))

    def _resolve(self, session: Optional[Session], error: Optional[BaseException]) -> None:
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(session)


class _PendingSlot:
    """The arena-of-one holding the active flow, its attempt and its timer."""

    def __init__(self, flow: PendingFlow, attempt: SignInAttempt, timer: threading.Timer) -> None:
        self.flow = flow
        self.attempt = attempt
        self.timer = timer
        self.consumed = False
        self.discarded = False


def _states_match(received: str, expected: str) -> bool:
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


class SessionCoordinator:
    """Drive sign-in and sign-out and keep the host in sync with the store.

    Args:
        config: OAuth2 client configuration.
        host: The host whose indicator and sign-in offer are reconciled.
        provider_id: Identifier reported to the host and in change events.
        client: Protocol client; built from *config* when omitted.
        store: Session table; a fresh one when omitted.
        session_file: Optional snapshot saved after every mutation and
            loaded by :meth:`restore`.
        flow_timeout: Seconds a pending flow waits for its redirect.
        default_account_label: Label used when the ``id_token`` names no
            account.
        offer_retries: Attempts at re-arming the host's sign-in offer.

    Example::

        coordinator = SessionCoordinator(config, host=host)
        coordinator.restore()
        attempt = coordinator.begin_sign_in()
        session = coordinator.handle_redirect(redirect_uri)
    """

    def __init__(
        self,
        config: OAuth2Config,
        host: AuthenticationHost,
        *,
        provider_id: str = "default",
        client: Optional[OAuth2Client] = None,
        store: Optional[SessionStore] = None,
        session_file: Optional[SessionFile] = None,
        flow_timeout: float = 300.0,
        default_account_label: str = "OAuth2 account",
        offer_retries: int = 3,
    ) -> None:
        self._config = config
        self._host = host
        self._provider_id = provider_id
        self._client = client if client is not None else OAuth2Client(config)
        self._store = store if store is not None else SessionStore()
        self._session_file = session_file
        self._flow_timeout = flow_timeout
        self._default_account_label = default_account_label
        self._offer_retries = max(1, offer_retries)

        self._lock = threading.RLock()
        self._slot: Optional[_PendingSlot] = None
        self._consumed_states: dict[str, float] = {}
        self._refreshes: dict[str, Future[Session]] = {}
        self._listeners: list[SessionsListener] = []
        self._signed_in = False
        self._offer_armed = False

    # ------------------------------------------------------------------ #
    # Read-only state
    # ------------------------------------------------------------------ #

    @property
    def provider_id(self) -> str:
        return self._provider_id

    @property
    def sessions(self) -> SessionStoreView:
        """Read-only view of the session store."""
        return self._store.view()

    @property
    def state(self) -> SignInState:
        with self._lock:
            if self._slot is not None:
                return SignInState.FLOW_PENDING
            if self._store.is_empty():
                return SignInState.SIGNED_OUT
            return SignInState.SIGNED_IN

    @property
    def is_signed_in(self) -> bool:
        """The signed-in indicator, as last pushed to the host."""
        with self._lock:
            return self._signed_in

    @property
    def offer_sign_in_armed(self) -> bool:
        """Whether the host accepted the most recent offer-sign-in request."""
        with self._lock:
            return self._offer_armed

    @property
    def pending_attempt(self) -> Optional[SignInAttempt]:
        with self._lock:
            return self._slot.attempt if self._slot is not None else None

    # ------------------------------------------------------------------ #
    # Host-facing provider surface
    # ------------------------------------------------------------------ #

    def list_sessions(self) -> list[Session]:
        return self._store.list()

    def get_session(self, session_id: str) -> Session:
        return self._store.get(session_id)

    def create_session(self, timeout: Optional[float] = None) -> Session:
        """Start (or join) a sign-in and block until it yields a session."""
        return self.begin_sign_in().result(timeout)

    def on_sessions_changed(self, listener: SessionsListener) -> Callable[[], None]:
        """Subscribe *listener* to change events.

        Returns:
            A callable that unsubscribes the listener.  Calling it more
            than once is harmless.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------ #
    # Start-up
    # ------------------------------------------------------------------ #

    def restore(self) -> list[Session]:
        """Load the snapshot file, if any, and reconcile the host.

        Always reconciles, so a host with no sessions gets its initial
        sign-in offer from here.

        Returns:
            The sessions that were restored.
        """
        restored: list[Session] = []
        with self._lock:
            if self._session_file is not None:
                for session in self._session_file.load():
                    if session.id in self._store:
                        continue
                    self._store.put(session)
                    restored.append(session)
            self._reconcile()
            if restored:
                logger.info("Restored %d session(s) for provider '%s'", len(restored), self._provider_id)
                self._fire(SessionsChangeEvent(provider_id=self._provider_id, added=tuple(restored)))
        return restored

    # ------------------------------------------------------------------ #
    # Sign-in
    # ------------------------------------------------------------------ #

    def begin_sign_in(self) -> SignInAttempt:
        """Start a sign-in flow, or join the one already pending.

        Creates a :class:`~pkcesession.models.PendingFlow`, arms its
        timeout, and asks the host to open the authorization URL.

        Returns:
            The attempt to wait on.  Concurrent callers get the same object.
        """
        with self._lock:
            if self._slot is not None:
                logger.debug("Sign-in already pending; joining the in-flight attempt")
                return self._slot.attempt

            flow = new_flow()
            while flow.state in self._consumed_states:
                flow = new_flow()
            url = self._client.build_authorization_url(flow)
            attempt = SignInAttempt(url)
            timer = threading.Timer(self._flow_timeout, self._expire, args=(flow.state,))
            timer.daemon = True
            self._slot = _PendingSlot(flow, attempt, timer)
            timer.start()
            logger.info("Started sign-in flow state=%s", redact(flow.state))

        try:
            self._host.open_external_url(url)
        except Exception as exc:
            # The URL is still available on the attempt for manual use
            logger.warning("Host could not open the authorization URL: %s", exc)
        return attempt

    def handle_redirect(self, uri: str) -> Session:
        """Route a redirect callback URI to the pending flow.

        See :meth:`complete_sign_in` for the outcomes.
        """
        return self.complete_sign_in(parse_redirect(uri))

    def complete_sign_in(self, params: RedirectParams) -> Session:
        """Finish the pending flow with already-parsed redirect parameters.

        Returns:
            The session created from the exchanged tokens.

        Raises:
            StateMismatchError: ``state`` matches no flow; the pending flow,
                if any, keeps waiting.
            FlowAlreadyConsumed: ``state`` belongs to a flow that already
                resolved, or is being resolved by a concurrent callback.
            FlowFailed: The redirect carried an ``error`` (or no ``code``).
            AuthServerError, NetworkError: The code exchange failed.
        """
        received = params.state or ""
        with self._lock:
            slot = self._slot
            if slot is not None and received and _states_match(received, slot.flow.state):
                if slot.consumed:
                    logger.warning("Rejected redirect for in-use state=%s", redact(received))
                    raise FlowAlreadyConsumed("This sign-in flow has already been completed")
                slot.consumed = True
                slot.timer.cancel()
            elif received in self._consumed_states:
                logger.warning("Rejected redirect for consumed state=%s", redact(received))
                raise FlowAlreadyConsumed("This sign-in flow has already been completed")
            else:
                logger.warning("Rejected redirect with unknown state=%s", redact(received))
                raise StateMismatchError("Redirect state does not match any pending sign-in")

        if params.error:
            failure = FlowFailed(params.error, params.error_description)
            logger.info("Authorization server refused sign-in: %s", params.error)
            self._finish(slot, error=failure)
            raise failure
        if not params.code:
            failure = FlowFailed("invalid_request", "redirect carried neither code nor error")
            self._finish(slot, error=failure)
            raise failure

        try:
            tokens = self._client.exchange_code(params.code, slot.flow)
            session = Session(
                id=str(uuid.uuid4()),
                account_label=self._account_label(tokens),
                tokens=tokens,
            )
        except (AuthServerError, NetworkError) as exc:
            logger.warning("Sign-in failed during code exchange: %s", exc)
            self._finish(slot, error=exc)
            raise
        except BaseException as exc:
            logger.exception("Unexpected failure while completing sign-in")
            self._finish(slot, error=exc)
            raise

        failure = self._finish(slot, session=session)
        if failure is not None:
            raise failure
        return session

    def cancel_sign_in(self) -> bool:
        """Abandon the pending flow.

        Returns:
            ``False`` if there was nothing to cancel (no flow, or its
            redirect is already being processed).
        """
        with self._lock:
            slot = self._slot
            if slot is None or slot.consumed:
                return False
            slot.consumed = True
            slot.flow.cancelled = True
        logger.info("Sign-in flow cancelled state=%s", redact(slot.flow.state))
        self._finish(slot, error=FlowCancelled("Sign-in was cancelled"))
        return True

    def _expire(self, state: str) -> None:
        with self._lock:
            slot = self._slot
            if slot is None or slot.consumed or slot.flow.state != state:
                return
            slot.consumed = True
        logger.info("Sign-in flow timed out state=%s", redact(state))
        self._finish(
            slot,
            error=FlowTimedOut(f"No sign-in redirect received within {self._flow_timeout:g} seconds"),
        )

    def _finish(
        self,
        slot: _PendingSlot,
        session: Optional[Session] = None,
        error: Optional[BaseException] = None,
    ) -> Optional[BaseException]:
        """Discard *slot* and commit its outcome.

        A successful sign-in replaces any existing session (single-account
        provider).  Listeners hear about it before waiters wake up.  A
        session from a flow that :meth:`sign_out` discarded mid-exchange is
        never stored; it is revoked and the flow ends as cancelled.

        Returns:
            The error the attempt was resolved with, or ``None``.
        """
        replaced: list[Session] = []
        dropped: Optional[Session] = None
        with self._lock:
            slot.timer.cancel()
            if self._slot is slot:
                self._slot = None
            self._remember_consumed(slot.flow.state)
            if session is not None and slot.discarded:
                logger.info("Dropping session from a sign-in that was signed out mid-exchange")
                dropped, session = session, None
                error = FlowCancelled("Signed out while the sign-in was completing")
            if session is not None:
                replaced = self._store.clear()
                self._store.put(session)
                self._persist()
                self._reconcile()
                self._fire(
                    SessionsChangeEvent(
                        provider_id=self._provider_id,
                        added=(session,),
                        removed=tuple(replaced),
                    )
                )
                logger.info("Signed in as %s (session %s)", session.account_label, session.id)
            else:
                self._reconcile()

        slot.attempt._resolve(session, error)
        if dropped is not None:
            self._revoke(dropped)
        for old in replaced:
            self._revoke(old)
        return error

    def _remember_consumed(self, state: str) -> None:
        """Record *state* as consumed and forget entries older than the flow timeout.

        A forgotten state is no longer in any slot either, so a late
        redirect carrying it is still rejected, as an unknown state.
        """
        now = monotonic()
        horizon = now - max(self._flow_timeout, _CONSUMED_STATE_MIN_AGE)
        for old_state, consumed_at in list(self._consumed_states.items()):
            if consumed_at < horizon:
                del self._consumed_states[old_state]
        self._consumed_states[state] = now

    # ------------------------------------------------------------------ #
    # Sign-out
    # ------------------------------------------------------------------ #

    def remove_session(self, session_id: str) -> Optional[Session]:
        """Remove a session by id and revoke its tokens, best-effort.

        Removing an unknown id is a no-op on the store but still delivers
        exactly one (empty) change event and re-runs reconciliation, so
        duplicate removal requests leave every observer consistent.

        Returns:
            The removed session, or ``None``.
        """
        with self._lock:
            removed = self._store.remove(session_id)
            if removed is None:
                logger.debug("remove_session: no session '%s'", session_id)
            else:
                self._persist()
                logger.info("Removed session %s", session_id)
            self._reconcile()
            self._fire(
                SessionsChangeEvent(
                    provider_id=self._provider_id,
                    removed=(removed,) if removed is not None else (),
                )
            )
        if removed is not None:
            self._revoke(removed)
        return removed

    def sign_out(self) -> list[Session]:
        """Cancel any pending flow and remove every session.

        A flow whose code exchange is already running cannot be cancelled;
        it is marked so that the session it yields is revoked instead of
        stored.

        Returns:
            The removed sessions.
        """
        self.cancel_sign_in()
        with self._lock:
            if self._slot is not None and self._slot.consumed:
                self._slot.discarded = True
            removed = self._store.clear()
            if removed:
                self._persist()
            self._reconcile()
            self._fire(SessionsChangeEvent(provider_id=self._provider_id, removed=tuple(removed)))
        for session in removed:
            self._revoke(session)
        return removed

    def handle_host_sessions_changed(self, provider_id: str) -> None:
        """React to a payload-free "sessions changed" event from the host.

        The event says nothing about what changed, so the store is
        re-queried and the indicator and sign-in offer are re-announced.
        Events for other providers are ignored.
        """
        if provider_id != self._provider_id:
            return
        with self._lock:
            logger.debug(
                "Host reported a session change; store has %d session(s)", len(self._store)
            )
            self._reconcile()

    # ------------------------------------------------------------------ #
    # Token access
    # ------------------------------------------------------------------ #

    def ensure_fresh(self, session_id: str) -> Session:
        """Return a session whose access token is not expired.

        Refreshes the token set when needed and announces the new version
        as a ``changed`` event.  Concurrent callers for the same session
        join a single refresh, so a refresh token is never sent twice.

        Raises:
            SessionNotFoundError: No such session.
            NoRefreshTokenError: The token is expired and cannot be
                refreshed; the session stays in the store.
            AuthServerError, NetworkError: The refresh failed.
        """
        with self._lock:
            session = self._store.get(session_id)
            if not session.tokens.is_expired():
                return session
            if not session.tokens.refresh_token:
                raise NoRefreshTokenError(
                    f"Session '{session_id}' has expired and has no refresh token; sign in again"
                )
            joined = self._refreshes.get(session_id)
            if joined is None:
                pending: Future[Session] = Future()
                self._refreshes[session_id] = pending

        if joined is not None:
            logger.debug("Refresh already running for session %s; joining it", session_id)
            return joined.result()

        try:
            updated = self._refresh(session)
        except BaseException as exc:
            with self._lock:
                self._refreshes.pop(session_id, None)
            pending.set_exception(exc)
            raise
        pending.set_result(updated)
        return updated

    def _refresh(self, session: Session) -> Session:
        tokens = self._client.refresh(session.tokens)
        updated = session.model_copy(update={"tokens": tokens})
        with self._lock:
            self._refreshes.pop(session.id, None)
            if session.id not in self._store:
                raise SessionNotFoundError(f"Session '{session.id}' was removed during refresh")
            self._store.replace(updated)
            self._persist()
            self._reconcile()
            self._fire(SessionsChangeEvent(provider_id=self._provider_id, changed=(updated,)))
        logger.debug("Refreshed tokens for session %s", session.id)
        return updated

    def access_token(self, session_id: Optional[str] = None) -> str:
        """Return a usable access token for *session_id* (default: the first session)."""
        if session_id is None:
            sessions = self._store.list()
            if not sessions:
                raise SessionNotFoundError("Not signed in")
            session_id = sessions[0].id
        return self.ensure_fresh(session_id).tokens.access_token

    def close(self) -> None:
        """Cancel any pending flow and stop its timer."""
        self.cancel_sign_in()

    # ------------------------------------------------------------------ #
    # Reconciliation and notification (call with the lock held)
    # ------------------------------------------------------------------ #

    def _reconcile(self) -> None:
        """Recompute the indicator from the store and re-announce the offer.

        When the store is empty the offer is re-issued every time, even if
        the host accepted an earlier one; the host may have dropped it while
        tearing down its previous affordance.
        """
        signed_in = not self._store.is_empty()
        self._signed_in = signed_in
        try:
            self._host.set_signed_in(self._provider_id, signed_in)
        except Exception as exc:
            logger.warning("Host failed to update the signed-in indicator: %s", exc)

        if signed_in:
            try:
                self._host.withdraw_offer_sign_in(self._provider_id)
            except Exception as exc:
                logger.warning("Host failed to withdraw the sign-in offer: %s", exc)
            self._offer_armed = False
        else:
            self._rearm_offer()

    def _rearm_offer(self) -> None:
        for attempt in range(1, self._offer_retries + 1):
            try:
                self._host.register_offer_sign_in(self._provider_id)
            except Exception as exc:
                logger.warning(
                    "Host rejected offer-sign-in request (attempt %d/%d): %s",
                    attempt,
                    self._offer_retries,
                    exc,
                )
                continue
            self._offer_armed = True
            return
        self._offer_armed = False
        logger.error(
            "Could not re-arm the sign-in offer for provider '%s'; will retry on next change",
            self._provider_id,
        )

    def _fire(self, event: SessionsChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session change listener failed")
        try:
            self._host.notify_sessions_changed(self._provider_id)
        except Exception as exc:
            logger.warning("Host failed to process the session change notification: %s", exc)

    def _persist(self) -> None:
        if self._session_file is None:
            return
        try:
            self._session_file.save(self._store.list())
        except OSError as exc:
            logger.warning("Could not save session snapshot %s: %s", self._session_file.path, exc)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _account_label(self, tokens: TokenSet) -> str:
        claims = tokens.id_token_claims()
        for claim in _ACCOUNT_CLAIMS:
            value = claims.get(claim)
            if value:
                return str(value)
        return self._default_account_label

    def _revoke(self, session: Session) -> None:
        try:
            self._client.revoke(session.tokens)
        except PkceSessionError as exc:
            logger.warning("Revocation for session %s failed: %s", session.id, exc)
