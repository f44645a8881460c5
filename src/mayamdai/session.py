import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeAlias

import nanoid
import websockets.asyncio.client
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from mayamdai.backoff import FixedIntervalBackoff, ReconnectBackoff
from mayamdai.correlation import CorrelationTable, Outcome
from mayamdai.error_schema import (
    AuthenticationFailedException,
    ConnectionClosedException,
    SendFailedException,
    ServerErrorException,
    SessionClosedException,
    stringify_exception,
)
from mayamdai.events import SessionEvents
from mayamdai.keepalive import KeepaliveMonitor
from mayamdai.messages import (
    AUTH_KIND,
    Envelope,
    InvalidMessageException,
    build_auth,
    encode,
    parse_envelope,
)
from mayamdai.task_manager import BackgroundTaskManager
from mayamdai.transport_options import TransportOptions

logger = logging.getLogger(__name__)

CONNECTED_MESSAGE = "Connected"
CLOSED_MESSAGE = "Closed"

ConnectFactory: TypeAlias = Callable[..., Awaitable[ClientConnection]]


class SessionState(enum.Enum):
    """The state a session can be in.

    Valid transitions:
    - IDLE -> {CONNECTING, CLOSING}
    - CONNECTING -> {IDLE, AUTHENTICATING, CLOSING}
    - AUTHENTICATING -> {IDLE, READY, CLOSING}
    - READY -> {IDLE, CLOSING}
    - CLOSING -> {IDLE, CLOSED}
    - CLOSED -> {}

    CLOSING -> IDLE only happens after a rejected authentication.
    """

    IDLE = 0
    CONNECTING = 1
    AUTHENTICATING = 2
    READY = 3
    CLOSING = 4
    CLOSED = 5


ConnectingStates = set([SessionState.CONNECTING, SessionState.AUTHENTICATING])
TerminalStates = set([SessionState.CLOSING, SessionState.CLOSED])


class Session:
    """One authenticated websocket shared by every request.

    The session owns at most one websocket at a time. A single serve task
    connects, authenticates, reads frames and reconnects, so every state
    transition happens in order on that task. Requests live in `requests`
    until a response, a timeout, a supersede or a teardown removes them.
    """

    session_id: str
    requests: CorrelationTable
    reconnect_attempts: int
    alive: bool

    _state: SessionState
    _ws: ClientConnection | None
    _serve_task: asyncio.Task[None] | None
    _closing_task: asyncio.Task[None] | None
    # Completes the next time the session becomes READY
    _connected: asyncio.Future[str] | None

    def __init__(
        self,
        transport_options: TransportOptions,
        events: SessionEvents | None = None,
        backoff: ReconnectBackoff | None = None,
        connect_factory: ConnectFactory = websockets.asyncio.client.connect,
    ) -> None:
        self.session_id = nanoid.generate()
        self._transport_options = transport_options
        self._events = events or SessionEvents()
        self._backoff = backoff or FixedIntervalBackoff.from_options(
            transport_options
        )
        self._connect_factory = connect_factory

        self._state = SessionState.IDLE
        self._ws = None
        self.alive = False
        self.reconnect_attempts = 0
        self._next_request_id = 0
        self._ready_message = CONNECTED_MESSAGE

        self.requests = CorrelationTable()
        self._task_manager = BackgroundTaskManager(f"session {self.session_id}")
        self._keepalive = KeepaliveMonitor(
            transport_options.ping_interval_ms,
            self._mark_alive,
            self._task_manager,
        )
        self._send_lock = asyncio.Lock()
        self._serve_task = None
        self._closing_task = None
        self._connected = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def events(self) -> SessionEvents:
        return self._events

    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    def is_terminal(self) -> bool:
        return self._state in TerminalStates

    def has_transport(self) -> bool:
        return self._ws is not None

    def next_request_id(self) -> int:
        request_id = self._next_request_id
        self._next_request_id += 1
        return request_id

    async def connect(
        self,
        endpoint_url: str,
        api_key: str,
        api_secret: str,
        websocket_options: Mapping[str, Any] | None = None,
    ) -> str:
        """Connect and authenticate, or join the attempt already in flight.

        Returns the server's first status message once the session is READY.
        With reconnection enabled, transport failures keep this waiting across
        attempts; a rejected authentication raises immediately.
        """
        if self.is_terminal():
            raise SessionClosedException("Session is closed")
        if self.is_ready():
            return self._ready_message

        if self._serve_task is None or self._serve_task.done():
            if self._ws is not None:
                raise ConnectionClosedException(
                    "Refusing to open a second websocket for one session"
                )
            self._connected = _new_connected_future()
            self._serve_task = self._task_manager.create_task(
                self._serve(
                    endpoint_url,
                    api_key,
                    api_secret,
                    dict(websocket_options or {}),
                ),
                name="serve",
            )
        else:
            logger.debug("%s: connect already in progress", self.session_id)

        assert self._connected is not None
        return await asyncio.shield(self._connected)

    async def send(self, message: Mapping[str, Any]) -> None:
        """Write one envelope to the current websocket."""
        ws = self._ws
        if ws is None:
            raise ConnectionClosedException("Websocket is not connected")
        data = encode(message, self._transport_options.codec)
        async with self._send_lock:
            await ws.send(data)

    async def close(self) -> str:
        """Fail every pending request and close the websocket.

        Safe to call in any state and more than once.
        """
        if self._state == SessionState.CLOSED:
            return CLOSED_MESSAGE
        if self._closing_task is None:
            self._closing_task = asyncio.create_task(self._do_close())
        await asyncio.shield(self._closing_task)
        return CLOSED_MESSAGE

    async def _do_close(self) -> None:
        logger.info("%s: closing session, ws: %r", self.session_id, self._ws)
        self._state = SessionState.CLOSING
        ws = self._ws

        drained = self.requests.drain_all(lambda _: SessionClosedException())
        logger.debug("%s: rejected %d pending requests", self.session_id, drained)
        self._fail_connected(SessionClosedException())
        self._keepalive.stop()
        await self._task_manager.cancel_all_tasks()

        if ws is not None:
            # Wait for the closing handshake before letting go of the handle
            await ws.close()
            self._events.emit("close", "Closing connection")
        self._ws = None
        self._next_request_id = 0
        self._state = SessionState.CLOSED
        logger.info("%s: closed", self.session_id)

    async def _serve(
        self,
        endpoint_url: str,
        api_key: str,
        api_secret: str,
        websocket_options: dict[str, Any],
    ) -> None:
        connect_kwargs: dict[str, Any] = {
            # Liveness probing belongs to KeepaliveMonitor
            "ping_interval": None,
            "close_timeout": self._transport_options.close_timeout_ms / 1000,
            **websocket_options,
        }
        while self._state not in TerminalStates:
            self._state = SessionState.CONNECTING
            logger.info("%s: connecting to %s", self.session_id, endpoint_url)
            opened = False
            failure: BaseException | None
            try:
                ws = await self._connect_factory(endpoint_url, **connect_kwargs)
            except Exception as e:
                self.reconnect_attempts += 1
                logger.warning(
                    "%s: error (%d) connecting: %s",
                    self.session_id,
                    self.reconnect_attempts,
                    stringify_exception(e),
                )
                failure = e
            else:
                opened = True
                try:
                    failure = await self._run_connection(
                        ws, endpoint_url, api_key, api_secret
                    )
                except AuthenticationFailedException as e:
                    self._teardown_after_rejection(e)
                    return

            if self._state in TerminalStates:
                return
            self._state = SessionState.IDLE
            if failure is not None and not isinstance(failure, ConnectionClosedOK):
                self._events.emit("error", failure)
            if opened:
                self._events.emit("close", _describe(failure))

            if not self._transport_options.reconnect:
                self._fail_after_disconnect(failure)
                return

            if self._connected is None or self._connected.done():
                self._connected = _new_connected_future()
            delay_ms = self._backoff.get_backoff_ms(self.reconnect_attempts)
            logger.info("%s: reconnecting in %sms", self.session_id, delay_ms)
            await asyncio.sleep(delay_ms / 1000)

    async def _run_connection(
        self,
        ws: ClientConnection,
        endpoint_url: str,
        api_key: str,
        api_secret: str,
    ) -> BaseException | None:
        """Drive one websocket until it goes away.

        Returns why it went away, None for a clean close from the server.
        Raises AuthenticationFailedException when the server rejects us.
        """
        self._ws = ws
        self._state = SessionState.AUTHENTICATING
        self.alive = True
        self.reconnect_attempts = 0
        logger.debug("%s: connected", self.session_id)
        self._events.emit("open", endpoint_url)
        self._keepalive.start(ws)
        try:
            await self.send(build_auth(self.next_request_id(), api_key, api_secret))
            async for data in ws:
                await self._handle_frame(data)
            return None
        except AuthenticationFailedException:
            raise
        except ConnectionClosed as e:
            logger.debug("%s: websocket closed: %s", self.session_id, e)
            return e
        except Exception as e:
            logger.exception("%s: unexpected error on websocket", self.session_id)
            return e
        finally:
            self._keepalive.stop()
            self.alive = False
            if self._state not in TerminalStates:
                # Requests made while the socket closes must queue, not send
                self._state = SessionState.IDLE
                self._ws = None
                await ws.close()

    async def _handle_frame(self, data: str | bytes) -> None:
        logger.debug("%s: message %r", self.session_id, data)
        try:
            envelope = parse_envelope(data, self._transport_options.codec)
        except InvalidMessageException:
            logger.debug("Message parse error", exc_info=True)
            return

        if envelope.kind == AUTH_KIND:
            await self._handle_auth(envelope)
            return

        outcome: Outcome
        if envelope.ok:
            outcome = envelope.payload()
        else:
            outcome = ServerErrorException(envelope.statusCode, envelope.statusMessage)
        if envelope.id is not None and self.requests.resolve(
            envelope.kind, envelope.id, outcome
        ):
            return
        self._handle_unsolicited(envelope)

    async def _handle_auth(self, envelope: Envelope) -> None:
        if self._state != SessionState.AUTHENTICATING:
            logger.debug("Ignoring auth response in state %s", self._state)
            return
        if not envelope.ok:
            logger.warning("Auth failed: %r", envelope.statusMessage)
            raise AuthenticationFailedException(envelope.primary_message)

        self._state = SessionState.READY
        # Snapshot before the first await, requests made from now on send
        # themselves
        backlog = self.requests.pending()
        logger.info(
            "%s: authenticated, replaying %d queued requests",
            self.session_id,
            len(backlog),
        )
        for pending in backlog:
            if self.requests.get(pending.kind, pending.id) is not pending:
                continue
            try:
                await self.send(pending.envelope)
            except Exception as e:
                logger.debug(
                    "Message send error (%s:%d)",
                    pending.kind,
                    pending.id,
                    exc_info=True,
                )
                self.requests.resolve(
                    pending.kind,
                    pending.id,
                    SendFailedException(
                        f"Message send failed: {stringify_exception(e)}"
                    ),
                )

        self._ready_message = envelope.primary_message or CONNECTED_MESSAGE
        if self._connected is not None and not self._connected.done():
            self._connected.set_result(self._ready_message)

    def _handle_unsolicited(self, envelope: Envelope) -> None:
        policy = self._transport_options.unsolicited_policy
        payload = envelope.payload()
        tagged = self._transport_options.partial_tag_field in payload
        if tagged and (
            policy == "any"
            or (policy == "known_kind" and self.requests.has_kind(envelope.kind))
        ):
            self._events.emit("partial", payload)
            return
        logger.debug("Stale response: %s, %s", envelope.kind, envelope.id)

    def _teardown_after_rejection(self, error: AuthenticationFailedException) -> None:
        self._state = SessionState.CLOSING
        drained = self.requests.drain_all(
            lambda _: AuthenticationFailedException(error.server_message)
        )
        logger.debug("%s: rejected %d pending requests", self.session_id, drained)
        self._next_request_id = 0
        self._fail_connected(error)
        self._state = SessionState.IDLE
        self._events.emit("close", error.message)

    def _fail_after_disconnect(self, failure: BaseException | None) -> None:
        message = f"Error: {_describe(failure)}"
        drained = self.requests.drain_all(lambda _: ConnectionClosedException(message))
        logger.debug("%s: rejected %d pending requests", self.session_id, drained)
        self._fail_connected(ConnectionClosedException(message))

    def _fail_connected(self, error: Exception) -> None:
        if self._connected is not None and not self._connected.done():
            self._connected.set_exception(error)

    def _mark_alive(self) -> None:
        self.alive = True


def _new_connected_future() -> asyncio.Future[str]:
    future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
    # Nobody may be waiting when it fails, don't warn about it at GC
    future.add_done_callback(
        lambda f: None if f.cancelled() else f.exception()
    )
    return future


def _describe(failure: BaseException | None) -> str:
    if failure is None:
        return "connection closed"
    return stringify_exception(failure)
