"""High-level session manager for Clearnode RPC.

This module provides the API callers use to talk to a Clearnode. It handles:
- Socket lifecycle and reconnection with exponential backoff
- Handing the fresh socket to the authentication handshake
- Heartbeat pings, and keepalive pings while a challenge awaits approval
- Request/response correlation
- Routing every inbound frame through one dispatch point

All state lives on one event loop; nothing here is thread-safe.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .auth import AuthResult, Authenticator, PendingChallenge, is_token_expiry
from .config import ClearnodeConfig
from .correlator import RequestCorrelator
from .credentials import CredentialStore
from .errors import (
    ClearnodeAuthError,
    ClearnodeChallengeTimeout,
    ClearnodeClientError,
    ClearnodeConnectionLost,
    ClearnodeNotConnected,
    ClearnodeProtocolError,
    ClearnodeRPCError,
    ClearnodeUserRejected,
)
from .protocol import (
    DecodeError,
    Envelope,
    FrameKind,
    build_ping,
    build_request,
    classify,
    decode,
    encode,
    signing_payload,
)
from .ws_client import ClearnodeWsClient, ClearnodeWsMessageType

if TYPE_CHECKING:
    from .credentials import SessionKey
    from .signer import MessageSigner

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

_END = object()


class ConnectionStatus(str, Enum):
    """Connection status; only CONNECTED carries application traffic."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    PENDING_AUTH = "pending_auth"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect ``attempt`` (1-based): ``base * 2**(attempt-1)``, capped."""
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return min(base * (2 ** (attempt - 1)), cap)


class Subscription(Generic[_T]):
    """Live, unbounded event stream; ends when the session is closed."""

    def __init__(self, owner: set[Subscription[_T]]) -> None:
        self._owner = owner
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        owner.add(self)

    def put(self, item: _T) -> None:
        self._queue.put_nowait(item)

    def end(self) -> None:
        self._queue.put_nowait(_END)

    def unsubscribe(self) -> None:
        self._owner.discard(self)

    def __aiter__(self) -> Subscription[_T]:
        return self

    async def __anext__(self) -> _T:
        item = await self._queue.get()
        if item is _END:
            self.unsubscribe()
            raise StopAsyncIteration
        return item


class ClearnodeSession:
    """Authenticated RPC session with one Clearnode.

    Usage:
        session = ClearnodeSession(load_config("clearnode.yaml"))
        session.on_status_changed(my_status_handler)
        await session.connect(session_key, wallet_signer)
        balances = await session.call("get_ledger_balances")
        await session.close()
    """

    def __init__(
        self,
        config: ClearnodeConfig | None = None,
        *,
        store: CredentialStore | None = None,
        label: str = "clearnode",
    ) -> None:
        """Initialize session.

        Args:
            config: Session tunables; defaults apply when omitted
            store: Credential cache; defaults to the configured file
            label: Prefix of every log line of this session
        """
        self.config = config or ClearnodeConfig()
        self.label = label
        self._store = store or CredentialStore(self.config.credentials_path)

        # Connection state
        self._ws: ClearnodeWsClient | None = None
        self._status = ConnectionStatus.DISCONNECTED
        self._generation = 0
        self._listen_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[AuthResult] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._retry_attempts = 0
        self._auto_reconnect = False
        self._closed = False

        # Identity and authentication
        self._identity: SessionKey | None = None
        self._signer: MessageSigner | None = None
        self._envelope_signer: MessageSigner | None = None
        self._authenticator: Authenticator | None = None
        self._auth_result: AuthResult | None = None
        self._reauth_task: asyncio.Task[None] | None = None
        self._rejected: set[str] = set()

        # Requests
        self._request_id = 0
        self._correlator = RequestCorrelator(label=label)

        # Keepalive
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None

        # Observers
        self._status_callbacks: list[Callable[[ConnectionStatus], Any]] = []
        self._message_callbacks: list[Callable[[Envelope], Any]] = []
        self._challenge_callbacks: list[Callable[[PendingChallenge], Any]] = []
        self._error_callbacks: list[Callable[[ClearnodeClientError], Any]] = []
        self._event_callbacks: dict[str, list[Callable[[Envelope], Any]]] = {}
        self._status_subscriptions: set[Subscription[ConnectionStatus]] = set()
        self._message_subscriptions: set[Subscription[Envelope]] = set()
        self._callback_tasks: set[asyncio.Task[Any]] = set()

    async def __aenter__(self) -> ClearnodeSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(self, identity: SessionKey, signer: MessageSigner) -> AuthResult:
        """Open the socket and authenticate; returns once authenticated.

        Calling again while connecting joins the running attempt; calling
        while connected with the same identity returns immediately.

        Raises:
            ClearnodeUserRejected: If a challenge for this identity was
                rejected and reset_rejection() has not been called since.
            ClearnodeAuthError: If the node rejected the handshake.
            ClearnodeTransportError: If the socket could not be opened.
        """
        if self._closed:
            raise ClearnodeClientError("Session is closed")
        if self.is_rejected(identity):
            raise ClearnodeUserRejected(
                f"Authentication for {identity.address} was rejected; "
                "call reset_rejection() before connecting again"
            )

        same_identity = (
            self._identity is not None and self._identity.address == identity.address
        )
        if self._connect_task is not None:
            if not same_identity:
                raise ClearnodeClientError(
                    "A connection attempt for another identity is in progress"
                )
            return await asyncio.shield(self._connect_task)
        authenticator = self._authenticator
        if (
            same_identity
            and self._ws is not None
            and authenticator is not None
            and authenticator.in_progress
        ):
            # Re-authentication on the open socket; join it as is.
            _LOGGER.debug("[%s] Joining re-authentication in progress", self.label)
            result = await authenticator.authenticate()
            await self._settle_attempts()
            return result
        if (
            self._status is ConnectionStatus.CONNECTED
            and same_identity
            and self._auth_result is not None
        ):
            return self._auth_result

        if not same_identity and self._ws is not None:
            await self._drop_connection("identity changed")

        self._cancel_reconnect()
        if self._status in (ConnectionStatus.DISCONNECTED, ConnectionStatus.FAILED):
            self._retry_attempts = 0
        self._identity = identity
        self._signer = signer
        self._envelope_signer = identity.signer()
        self._auto_reconnect = True
        return await asyncio.shield(self._start_attempt())

    async def disconnect(self) -> None:
        """Close the socket, fail pending requests and stay disconnected."""
        _LOGGER.info("[%s] Disconnecting", self.label)
        self._auto_reconnect = False
        await self._drop_connection("disconnected by caller")

    async def close(self) -> None:
        """Disconnect and end every subscription; the session is unusable after."""
        await self.disconnect()
        self._closed = True
        for subscription in [*self._status_subscriptions, *self._message_subscriptions]:
            subscription.end()
        self._status_subscriptions.clear()
        self._message_subscriptions.clear()

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        """Check if session is connected and authenticated."""
        return self._status is ConnectionStatus.CONNECTED

    @property
    def pending_challenge(self) -> PendingChallenge | None:
        if self._authenticator is None:
            return None
        return self._authenticator.pending_challenge

    @property
    def address(self) -> str | None:
        """Wallet address the session authenticated as."""
        if self._auth_result is not None:
            return self._auth_result.address
        return self._signer.address if self._signer is not None else None

    # -------------------------------------------------------------------------
    # Public API: Challenge Approval
    # -------------------------------------------------------------------------

    async def approve_challenge(self) -> AuthResult:
        """Sign the pending challenge and wait for the verify round trip."""
        if self._authenticator is None:
            raise ClearnodeAuthError("No challenge is awaiting approval")
        try:
            return await self._authenticator.approve()
        finally:
            await self._settle_attempts()

    async def reject_challenge(self, reason: str = "User rejected the challenge") -> None:
        """Decline the pending challenge and disconnect.

        The identity stays blocked from automatic or explicit reconnection
        until :meth:`reset_rejection` is called.
        """
        if self._authenticator is None:
            raise ClearnodeAuthError("No challenge is awaiting approval")
        await self._authenticator.reject(reason)
        self._mark_rejected()
        await self._settle_attempts()

    def is_rejected(self, identity: SessionKey) -> bool:
        return identity.address.lower() in self._rejected

    def reset_rejection(self, identity: SessionKey | None = None) -> None:
        """Allow a rejected identity (or all of them) to authenticate again."""
        if identity is None:
            self._rejected.clear()
        else:
            self._rejected.discard(identity.address.lower())

    # -------------------------------------------------------------------------
    # Public API: Requests
    # -------------------------------------------------------------------------

    async def send(self, payload: Envelope | Mapping[str, Any]) -> int:
        """Send a request without waiting for its response.

        Returns:
            Request id of the sent envelope

        Raises:
            ClearnodeNotConnected: If the session is not authenticated
        """
        self._require_status(ConnectionStatus.CONNECTED)
        envelope = await self._prepare(payload)
        await self._transmit(envelope)
        return envelope.request_id

    async def send_with_response(
        self, payload: Envelope | Mapping[str, Any], *, timeout: float | None = None
    ) -> Envelope:
        """Send a request and wait for the response carrying its id.

        Args:
            payload: An Envelope (its id is reused) or a mapping with
                ``method``, optional ``params`` and optional ``request_id``
            timeout: Seconds to wait; defaults to ``config.request_timeout``

        Raises:
            ClearnodeNotConnected: If the session is not authenticated
            ClearnodeTimeout: If no response arrived in time
            ClearnodeConnectionLost: If the socket dropped first
            ClearnodeRPCError: If the node answered with an error
        """
        self._require_status(ConnectionStatus.CONNECTED)
        envelope = await self._prepare(payload)
        return await self._request(envelope, timeout)

    async def call(
        self,
        method: str,
        params: list[Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> list[Any]:
        """Invoke an RPC method and return the response params."""
        response = await self.send_with_response(
            {"method": method, "params": params or []}, timeout=timeout
        )
        return response.params

    async def ping(self) -> None:
        """Signed liveness check; allowed while connected or awaiting approval."""
        self._require_status(ConnectionStatus.CONNECTED, ConnectionStatus.PENDING_AUTH)
        envelope = await self._sign(build_ping(request_id=self.next_request_id()))
        await self._request(envelope, None)

    def next_request_id(self) -> int:
        """Allocate a request id; ids are never reused by this session."""
        self._request_id += 1
        return self._request_id

    # -------------------------------------------------------------------------
    # Public API: Observers
    # -------------------------------------------------------------------------

    def on_status_changed(
        self, callback: Callable[[ConnectionStatus], Awaitable[None] | None]
    ) -> Callable[[], None]:
        """Register callback for status changes; returns an unsubscribe function."""
        return _register(self._status_callbacks, callback)

    def on_message(
        self, callback: Callable[[Envelope], Awaitable[None] | None]
    ) -> Callable[[], None]:
        """Register callback receiving every decoded inbound envelope."""
        return _register(self._message_callbacks, callback)

    def on_challenge(
        self, callback: Callable[[PendingChallenge], Awaitable[None] | None]
    ) -> Callable[[], None]:
        """Register callback for challenges that await approval."""
        return _register(self._challenge_callbacks, callback)

    def on_error(
        self, callback: Callable[[ClearnodeClientError], Awaitable[None] | None]
    ) -> Callable[[], None]:
        """Register callback for errors raised outside any caller's await."""
        return _register(self._error_callbacks, callback)

    def on_event(
        self, method: str, callback: Callable[[Envelope], Awaitable[None] | None]
    ) -> Callable[[], None]:
        """Register callback for node pushes of one method, e.g. ``EVENT_BALANCE_UPDATE``.

        Only uncorrelated responses are routed here; answers to our own
        requests never are.
        """
        if not method:
            raise ValueError("event method must be a non-empty string")
        return _register(self._event_callbacks.setdefault(method, []), callback)

    def status_changes(self) -> Subscription[ConnectionStatus]:
        """Stream of status changes from now until close()."""
        return Subscription(self._status_subscriptions)

    def messages(self) -> Subscription[Envelope]:
        """Stream of decoded inbound envelopes from now until close()."""
        return Subscription(self._message_subscriptions)

    # -------------------------------------------------------------------------
    # Authentication host hooks
    # -------------------------------------------------------------------------

    async def send_envelope(self, envelope: Envelope) -> None:
        await self._transmit(envelope)

    def challenge_received(self, challenge: PendingChallenge) -> None:
        self._set_status(ConnectionStatus.PENDING_AUTH)
        if self._keepalive_task is None:
            self._keepalive_task = asyncio.get_running_loop().create_task(
                self._ping_loop(self._generation, ConnectionStatus.PENDING_AUTH),
                name=f"{self.label}-keepalive",
            )
        self._notify(self._challenge_callbacks, challenge)

    def challenge_cleared(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_status(self, status: ConnectionStatus) -> None:
        """Update status and notify observers."""
        if self._status is status:
            return
        _LOGGER.debug("[%s] Status: %s → %s", self.label, self._status.value, status.value)
        self._status = status
        for subscription in self._status_subscriptions:
            subscription.put(status)
        self._notify(self._status_callbacks, status)

    def _start_attempt(self) -> asyncio.Task[AuthResult]:
        task = asyncio.get_running_loop().create_task(
            self._establish(), name=f"{self.label}-connect"
        )
        self._connect_task = task
        task.add_done_callback(self._attempt_finished)
        return task

    def _attempt_finished(self, task: asyncio.Task[AuthResult]) -> None:
        if self._connect_task is task:
            self._connect_task = None
        if not task.cancelled() and task.exception() is not None:
            _LOGGER.debug("[%s] Connection attempt failed: %s", self.label, task.exception())

    async def _establish(self) -> AuthResult:
        """Open a socket if needed, then authenticate on it."""
        if self._identity is None or self._signer is None:
            raise ClearnodeClientError("connect() has not been given an identity")
        generation = self._generation
        self._set_status(ConnectionStatus.CONNECTING)

        if self._ws is None:
            _LOGGER.info(
                "[%s] Connecting to %s (attempt #%d)",
                self.label,
                self.config.url,
                self._retry_attempts + 1,
            )
            ws_client = ClearnodeWsClient()
            try:
                await ws_client.connect(
                    self.config.url,
                    ping_interval=self.config.ping_interval,
                    timeout=self.config.connect_timeout,
                )
            except ClearnodeClientError as err:
                _LOGGER.warning("[%s] Connection failed: %s", self.label, err)
                if generation == self._generation:
                    self._handle_connection_failure()
                raise
            if generation != self._generation:
                await ws_client.close()
                raise ClearnodeConnectionLost("Session was disconnected while connecting")

            _LOGGER.info("[%s] WebSocket connected, starting listener", self.label)
            self._ws = ws_client
            self._listen_task = asyncio.get_running_loop().create_task(
                self._listen(ws_client, generation), name=f"{self.label}-listen"
            )

        authenticator = self._authenticator_for(self._identity, self._signer)
        try:
            result = await authenticator.authenticate()
        except ClearnodeClientError as err:
            await self._handle_auth_failure(err, generation)
            raise
        if generation != self._generation:
            raise ClearnodeConnectionLost("Session was disconnected while authenticating")
        self._on_authenticated(result)
        return result

    def _authenticator_for(
        self, identity: SessionKey, signer: MessageSigner
    ) -> Authenticator:
        current = self._authenticator
        if (
            current is None
            or current.identity.address != identity.address
            or current.signer is not signer
        ):
            current = Authenticator(
                self,
                identity=identity,
                signer=signer,
                store=self._store,
                policy=self.config.policy,
                handshake_timeout=self.config.handshake_timeout,
                challenge_timeout=self.config.challenge_timeout,
                auto_approve=self.config.auto_approve,
            )
            self._authenticator = current
        return current

    def _on_authenticated(self, result: AuthResult) -> None:
        self._auth_result = result
        self._retry_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.get_running_loop().create_task(
                self._ping_loop(self._generation, ConnectionStatus.CONNECTED),
                name=f"{self.label}-heartbeat",
            )

    async def _handle_auth_failure(
        self, err: ClearnodeClientError, generation: int
    ) -> None:
        if generation != self._generation:
            # The connection was already torn down and handled.
            return
        if isinstance(err, ClearnodeUserRejected):
            self._mark_rejected()
            await self._drop_connection(str(err))
        elif isinstance(err, ClearnodeChallengeTimeout):
            _LOGGER.warning("[%s] %s", self.label, err)
            self._auto_reconnect = False
            await self._drop_connection(str(err), status=ConnectionStatus.FAILED)
        elif isinstance(err, ClearnodeAuthError):
            # The socket is healthy; only the credentials were refused.
            _LOGGER.error("[%s] Authentication failed: %s", self.label, err)
            self._auto_reconnect = False
            self._set_status(ConnectionStatus.FAILED)
        else:
            _LOGGER.warning("[%s] Handshake aborted: %s", self.label, err)
            await self._drop_connection(str(err), reconnect=True)
        self._notify(self._error_callbacks, err)

    def _mark_rejected(self) -> None:
        if self._identity is not None:
            self._rejected.add(self._identity.address.lower())
        self._auto_reconnect = False

    def _handle_connection_failure(self) -> None:
        """Schedule reconnection attempt with exponential backoff."""
        if not self._auto_reconnect or self._closed or self._reconnect_task is not None:
            return
        if self._retry_attempts >= self.config.max_retries:
            _LOGGER.error(
                "[%s] Giving up after %d reconnect attempt(s)",
                self.label,
                self._retry_attempts,
            )
            self._auto_reconnect = False
            self._set_status(ConnectionStatus.FAILED)
            return

        self._retry_attempts += 1
        delay = backoff_delay(
            self._retry_attempts,
            self.config.retry_base_delay,
            self.config.retry_max_delay,
        )
        _LOGGER.info(
            "[%s] Reconnecting in %.1fs (attempt %d/%d)",
            self.label,
            delay,
            self._retry_attempts,
            self.config.max_retries,
        )
        self._set_status(ConnectionStatus.RECONNECTING)
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after_delay(delay), name=f"{self.label}-reconnect"
        )

    async def _reconnect_after_delay(self, delay: float) -> None:
        """Reconnect after delay."""
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Reconnect cancelled", self.label)
            raise
        self._reconnect_task = None
        if not self._auto_reconnect or self._closed:
            return
        attempt = self._connect_task or self._start_attempt()
        try:
            await asyncio.shield(attempt)
        except ClearnodeClientError as err:
            _LOGGER.warning("[%s] Reconnect failed: %s", self.label, err)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    async def _drop_connection(
        self,
        reason: str,
        *,
        status: ConnectionStatus = ConnectionStatus.DISCONNECTED,
        reconnect: bool = False,
        generation: int | None = None,
    ) -> None:
        """Tear down the socket and everything bound to it.

        Fails every pending request, aborts an in-flight handshake and stops
        all timers; then either schedules a reconnect or settles on ``status``.
        """
        if generation is not None and generation != self._generation:
            return
        self._generation += 1

        current = asyncio.current_task()
        tasks = [
            task
            for task in (
                self._heartbeat_task,
                self._keepalive_task,
                self._reconnect_task,
                self._reauth_task,
                self._listen_task,
            )
            if task is not None and task is not current
        ]
        self._heartbeat_task = None
        self._keepalive_task = None
        self._reconnect_task = None
        self._reauth_task = None
        self._listen_task = None

        self._correlator.fail_all(reason)
        if self._authenticator is not None:
            self._authenticator.abort(reason)
        self._auth_result = None

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await asyncio.wait_for(ws.close(), timeout=2.0)
            except TimeoutError:
                _LOGGER.warning("[%s] WebSocket close timed out", self.label)

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if reconnect and self._auto_reconnect:
            self._handle_connection_failure()
        else:
            self._set_status(status)

    async def _settle_attempts(self) -> None:
        pending = {
            task
            for task in (self._connect_task, self._reauth_task)
            if task is not None and task is not asyncio.current_task()
        }
        if pending:
            await asyncio.wait(pending)

    # -------------------------------------------------------------------------
    # Internal: Message Listener
    # -------------------------------------------------------------------------

    async def _listen(self, ws: ClearnodeWsClient, generation: int) -> None:
        """Listen for frames from the node until the socket ends."""
        reason = "connection closed by node"
        try:
            async for msg in ws:
                if generation != self._generation:
                    return
                if msg.type == ClearnodeWsMessageType.TEXT:
                    self._dispatch(msg.data or "")
                elif msg.type == ClearnodeWsMessageType.CLOSED:
                    _LOGGER.info("[%s] WebSocket closed by node", self.label)
                    break
                elif msg.type == ClearnodeWsMessageType.ERROR:
                    _LOGGER.error("[%s] WebSocket error", self.label)
                    reason = "websocket error"
                    break
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Listener cancelled", self.label)
            raise
        except ClearnodeClientError as err:
            _LOGGER.warning("[%s] Client error: %s", self.label, err)
            reason = str(err)
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected error: %s", self.label, err)
            reason = f"unexpected error: {err}"

        await self._drop_connection(reason, reconnect=True, generation=generation)

    def _dispatch(self, frame: str) -> None:
        """Route one inbound frame; frames are handled strictly in order."""
        kind = classify(frame)
        decoded = decode(frame)
        if isinstance(decoded, DecodeError):
            error = ClearnodeProtocolError(f"Undecodable frame: {decoded}")
            _LOGGER.warning("[%s] %s", self.label, error)
            self._notify(self._error_callbacks, error)
            return

        _LOGGER.debug(
            "[%s] ← %s id=%d (%s)", self.label, decoded.method, decoded.request_id, kind.value
        )
        for subscription in self._message_subscriptions:
            subscription.put(decoded)
        self._notify(self._message_callbacks, decoded)

        correlated = decoded.request_id in self._correlator
        authenticator = self._authenticator
        if (
            kind.is_auth_control
            and not correlated
            and authenticator is not None
            and authenticator.handle_frame(decoded, kind)
        ):
            return

        if kind is FrameKind.AUTH_CHALLENGE:
            _LOGGER.debug("[%s] Ignoring unsolicited challenge", self.label)
        elif not decoded.is_response:
            _LOGGER.debug(
                "[%s] Ignoring request %s id=%d from node",
                self.label,
                decoded.method,
                decoded.request_id,
            )
        elif kind is FrameKind.ERROR:
            self._handle_error_frame(decoded, correlated=correlated)
        elif correlated:
            self._correlator.resolve(decoded.request_id, decoded)
        else:
            handlers = self._event_callbacks.get(decoded.method)
            if not handlers:
                _LOGGER.debug(
                    "[%s] Unsolicited %s id=%d", self.label, decoded.method, decoded.request_id
                )
                return
            self._notify(handlers, decoded)

    def _handle_error_frame(self, envelope: Envelope, *, correlated: bool) -> None:
        message = envelope.error_message or "unknown error"
        error = ClearnodeRPCError(message, request_id=envelope.request_id)
        if correlated:
            self._correlator.reject(envelope.request_id, error)
        else:
            _LOGGER.warning("[%s] Error from node: %s", self.label, message)
            self._notify(self._error_callbacks, error)

        if self._status is ConnectionStatus.CONNECTED and is_token_expiry(message):
            self._start_reauthentication(message)

    def _start_reauthentication(self, reason: str) -> None:
        authenticator = self._authenticator
        if authenticator is None or self._reauth_task is not None or authenticator.in_progress:
            return
        _LOGGER.info("[%s] Token no longer accepted (%s), re-authenticating", self.label, reason)
        self._store.clear_token()
        self._reauth_task = asyncio.get_running_loop().create_task(
            self._reauthenticate(authenticator, self._generation),
            name=f"{self.label}-reauth",
        )

    async def _reauthenticate(self, authenticator: Authenticator, generation: int) -> None:
        try:
            result = await authenticator.authenticate()
        except ClearnodeClientError as err:
            await self._handle_auth_failure(err, generation)
            return
        finally:
            if self._reauth_task is asyncio.current_task():
                self._reauth_task = None
        if generation == self._generation:
            self._on_authenticated(result)

    # -------------------------------------------------------------------------
    # Internal: Sending
    # -------------------------------------------------------------------------

    def _require_status(self, *allowed: ConnectionStatus) -> None:
        if self._status not in allowed:
            raise ClearnodeNotConnected(
                f"Session is {self._status.value}, expected "
                + " or ".join(status.value for status in allowed)
            )

    async def _prepare(self, payload: Envelope | Mapping[str, Any]) -> Envelope:
        if isinstance(payload, Envelope):
            envelope = payload
        elif isinstance(payload, Mapping):
            if not payload.get("method"):
                raise ValueError("payload requires a method")
            request_id = payload.get("request_id")
            envelope = build_request(
                request_id=request_id if request_id is not None else self.next_request_id(),
                method=str(payload["method"]),
                params=payload.get("params"),
            )
        else:
            raise TypeError(f"Unsupported payload type: {type(payload).__name__}")
        if envelope.signatures:
            return envelope
        return await self._sign(envelope)

    async def _sign(self, envelope: Envelope) -> Envelope:
        if self._envelope_signer is None:
            raise ClearnodeNotConnected("No session key to sign with")
        signature = await self._envelope_signer.sign(signing_payload(envelope))
        return envelope.with_signatures(signature)

    async def _request(self, envelope: Envelope, timeout: float | None) -> Envelope:
        future = self._correlator.register(
            envelope.request_id,
            timeout if timeout is not None else self.config.request_timeout,
        )
        try:
            await self._transmit(envelope)
        except ClearnodeClientError as err:
            self._correlator.reject(envelope.request_id, err)
        return await future

    async def _transmit(self, envelope: Envelope) -> None:
        if self._ws is None:
            raise ClearnodeConnectionLost("WebSocket is not connected")
        _LOGGER.debug(
            "[%s] → %s id=%d", self.label, envelope.method, envelope.request_id
        )
        await self._ws.send_text(encode(envelope))

    # -------------------------------------------------------------------------
    # Internal: Keepalive
    # -------------------------------------------------------------------------

    async def _ping_loop(self, generation: int, status: ConnectionStatus) -> None:
        """Ping every ping_interval while the session is in ``status``."""
        try:
            while generation == self._generation:
                await asyncio.sleep(self.config.ping_interval)
                if generation != self._generation:
                    return
                if self._status is not status:
                    continue
                try:
                    await self.ping()
                except ClearnodeClientError as err:
                    # The socket's close event drives reconnection, not this.
                    _LOGGER.warning("[%s] Ping failed: %s", self.label, err)
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] %s ping loop cancelled", self.label, status.value)
            raise

    # -------------------------------------------------------------------------
    # Internal: Observers
    # -------------------------------------------------------------------------

    def _notify(self, callbacks: list[Callable[[_T], Any]], value: _T) -> None:
        for callback in list(callbacks):
            try:
                result = callback(value)
            except Exception:
                _LOGGER.exception("[%s] Callback %r failed", self.label, callback)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Future[Any]) -> None:
        self._callback_tasks.discard(task)  # type: ignore[arg-type]
        if not task.cancelled() and task.exception() is not None:
            _LOGGER.error(
                "[%s] Async callback failed", self.label, exc_info=task.exception()
            )


def _register(callbacks: list[Any], callback: Any) -> Callable[[], None]:
    callbacks.append(callback)

    def unsubscribe() -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    return unsubscribe
