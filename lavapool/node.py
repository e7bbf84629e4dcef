"""Lavalink node WebSocket connection.

This module implements the connection to a single Lavalink node: the
authenticated handshake, session resuming, in-order fire-and-forget sends
and bounded reconnection after abnormal closes.
"""

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from .errors import NodeConnectionError, RetriesExhaustedError
from .events import Event, EventSink
from .protocol import (
    CLIENT_NAME,
    CLIENT_VERSION,
    CLOSE_CODE_ABNORMAL,
    CLOSE_CODE_NORMAL,
    DISCONNECT_REASON,
    HEADER_AUTHORIZATION,
    HEADER_CLIENT_NAME,
    HEADER_RESUME_KEY,
    HEADER_SESSION_RESUMED,
    HEADER_USER_ID,
    ConfigureResuming,
    NodeStats,
    OutgoingMessage,
    parse_json_message,
)

_LOGGER = logging.getLogger(__name__)

# Opens a WebSocket; same call signature as websockets' connect()
Connector = Callable[..., Awaitable[Any]]


@dataclass
class NodeOptions:
    """Connection settings for one Lavalink node."""
    hostname: str
    port: int = 2333
    password: str = "youshallnotpass"
    id: Optional[str] = None
    secure: bool = False
    resume_key: Optional[str] = None
    resume_timeout: int = 60  # seconds the node keeps our session after a drop
    max_retry_attempts: int = 10
    retry_interval: float = 5.0  # seconds between reconnection attempts

    def __post_init__(self) -> None:
        if not self.hostname:
            raise ValueError("Node hostname is required")
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ValueError(f"Invalid port for node {self.hostname}: {self.port!r}")
        if self.resume_timeout <= 0:
            raise ValueError("resume_timeout must be positive")
        if self.max_retry_attempts < 0:
            raise ValueError("max_retry_attempts must not be negative")
        if self.retry_interval < 0:
            raise ValueError("retry_interval must not be negative")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NodeOptions":
        """Build options from a plain mapping, e.g. a parsed config file."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown node option(s): {', '.join(sorted(unknown))}")
        return cls(**data)


class NodeState:
    """Connection state constants."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Node:
    """WebSocket connection to a Lavalink node.

    ``connect()`` starts a background task that performs the handshake and
    reads messages until the socket closes. Inbound messages and lifecycle
    changes are reported to ``sink``; nothing is raised to the caller for
    network failures. Abnormal closes are retried every
    ``options.retry_interval`` seconds, at most ``options.max_retry_attempts``
    times after the first attempt over the node's lifetime.
    """

    def __init__(
        self,
        options: NodeOptions,
        client_id: str,
        sink: EventSink,
        connector: Optional[Connector] = None,
    ) -> None:
        """Initialize the node.

        Args:
            options: Connection settings
            client_id: Discord user id of the bot, sent as User-Id
            sink: Receiver of lifecycle notifications and raw messages
            connector: WebSocket factory (defaults to websockets' connect)
        """
        self.options = options
        self._client_id = client_id
        self._sink = sink
        self._connector = connector or websocket_connect

        self.state = NodeState.DISCONNECTED
        self.retry_attempts = 0
        self.stats = NodeStats()

        self._websocket: Optional[Any] = None
        self._resumed = False
        self._closing = False

        # Outbound frames, drained in order by the writer task
        self._outbox: Optional["asyncio.Queue[str]"] = None

        # Tasks
        self._run_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None

    def __repr__(self) -> str:
        return (
            f"<Node id={self.identifier!r} uri={self.uri!r} state={self.state} "
            f"retries={self.retry_attempts} players={self.stats.players}>"
        )

    @property
    def identifier(self) -> str:
        return self.options.id or self.options.hostname

    @property
    def uri(self) -> str:
        scheme = "wss" if self.options.secure else "ws"
        return f"{scheme}://{self.options.hostname}:{self.options.port}"

    @property
    def headers(self) -> Dict[str, str]:
        """Handshake headers."""
        headers = {
            HEADER_AUTHORIZATION: self.options.password,
            HEADER_USER_ID: str(self._client_id),
            HEADER_CLIENT_NAME: f"{CLIENT_NAME}/{CLIENT_VERSION}",
        }
        if self.options.resume_key:
            headers[HEADER_RESUME_KEY] = self.options.resume_key
        return headers

    @property
    def is_connected(self) -> bool:
        return self.state == NodeState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        """Whether a reconnection attempt is scheduled."""
        return self._retry_handle is not None

    @property
    def retries_exhausted(self) -> bool:
        """Whether the node will no longer reconnect on its own."""
        return (
            self.state == NodeState.DISCONNECTED
            and not self.reconnect_pending
            and self.retry_attempts > self.options.max_retry_attempts
        )

    def connect(self) -> None:
        """Start a connection attempt.

        Does nothing unless the node is disconnected. Must be called from
        a running event loop.
        """
        if self.state != NodeState.DISCONNECTED:
            return

        loop = asyncio.get_running_loop()
        self._cancel_retry()

        self.retry_attempts += 1
        self._closing = False
        self._set_state(NodeState.CONNECTING)
        _LOGGER.info(
            "[NODE-%s] Connecting to %s (attempt %d)",
            self.identifier,
            self.uri,
            self.retry_attempts,
        )
        self._run_task = loop.create_task(self._run())

    async def disconnect(self) -> None:
        """Close the connection without scheduling a reconnect."""
        self._cancel_retry()

        if self.state == NodeState.DISCONNECTED:
            return

        websocket = self._websocket
        task = self._run_task
        self._closing = True

        if websocket is None:
            # Handshake still in flight
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            if self.state != NodeState.DISCONNECTED:
                # Cancelled before its first step, so _run never saw it
                self._on_close(CLOSE_CODE_NORMAL, DISCONNECT_REASON)
            return

        await websocket.close(CLOSE_CODE_NORMAL, DISCONNECT_REASON)

        if task is not None and task is not asyncio.current_task():
            await task

    def send(self, message: Union[OutgoingMessage, Mapping[str, Any]]) -> None:
        """Queue a message for the node.

        Messages are written in call order. Nothing is sent, and no error
        is raised, while the node is not connected.
        """
        websocket = self._websocket
        if (
            self.state != NodeState.CONNECTED
            or websocket is None
            or websocket.state is not State.OPEN
            or self._outbox is None
        ):
            _LOGGER.debug("[NODE-%s] Not connected, dropping message", self.identifier)
            return

        if isinstance(message, OutgoingMessage):
            data = message.to_json()
        else:
            data = json.dumps(dict(message))

        _LOGGER.debug("[NODE-%s] Sending: %s", self.identifier, data)
        self._outbox.put_nowait(data)

    async def _run(self) -> None:
        """Connect, then read messages until the socket closes."""
        try:
            websocket = await self._connector(
                self.uri,
                additional_headers=self.headers,
                ping_interval=30,
                ping_timeout=10,
            )
        except asyncio.CancelledError:
            self._on_close(CLOSE_CODE_NORMAL, DISCONNECT_REASON)
            raise
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self._on_error(e)
            self._on_close(CLOSE_CODE_ABNORMAL, str(e))
            return

        self._websocket = websocket
        self._on_upgrade(websocket)
        self._on_open()

        try:
            async for message in websocket:
                try:
                    self._on_message(message)
                except Exception as e:
                    _LOGGER.warning(
                        "[NODE-%s] Error handling message: %s", self.identifier, e
                    )
                    self._sink.notify(Event.NODE_ERROR, self, e)
        except ConnectionClosed:
            pass
        finally:
            if self._websocket is websocket:
                self._on_close(websocket.close_code, websocket.close_reason)

    async def _writer(self, websocket: Any, outbox: "asyncio.Queue[str]") -> None:
        """Write queued messages to the socket in order."""
        while True:
            data = await outbox.get()
            try:
                await websocket.send(data)
            except ConnectionClosed:
                # The reader observes the close and runs _on_close
                return

    def _configure_resuming(self) -> None:
        if not self.options.resume_key:
            return

        self.send(
            ConfigureResuming(
                key=self.options.resume_key,
                timeout=self.options.resume_timeout,
            )
        )

    # -------------------------------------------------------------------------
    # WebSocket event handlers
    # -------------------------------------------------------------------------

    def _on_upgrade(self, websocket: Any) -> None:
        """Handle the accepted handshake response."""
        response = getattr(websocket, "response", None)
        headers = getattr(response, "headers", None) or {}

        if str(headers.get(HEADER_SESSION_RESUMED, "")).lower() == "true":
            self._resumed = True
            _LOGGER.info("[NODE-%s] Session resumed", self.identifier)
            self._sink.notify(Event.NODE_RESUME, self)

    def _on_open(self) -> None:
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.get_running_loop().create_task(
            self._writer(self._websocket, self._outbox)
        )

        self._set_state(NodeState.CONNECTED)
        self._sink.notify(Event.NODE_CONNECT, self)

        if not self._resumed:
            self._configure_resuming()

        self._resumed = False

    def _on_message(self, message: Union[str, bytes]) -> None:
        if isinstance(message, bytes):
            message = message.decode("utf-8")

        try:
            op, payload = parse_json_message(message)
        except ValueError as e:
            _LOGGER.warning("[NODE-%s] Invalid message: %s", self.identifier, e)
            self._sink.notify(Event.NODE_ERROR, self, e)
            return

        _LOGGER.debug("[NODE-%s] Received %s: %s", self.identifier, op, payload)
        self._sink.notify(Event.RAW, self, payload)

    def _on_error(self, error: BaseException) -> None:
        _LOGGER.warning("[NODE-%s] WebSocket error: %s", self.identifier, error)
        self._sink.notify(Event.NODE_ERROR, self, error)

    def _on_close(self, code: Optional[int], reason: Optional[str]) -> None:
        reason = reason or ""
        clean = self._closing or (
            code == CLOSE_CODE_NORMAL and reason == DISCONNECT_REASON
        )

        self._closing = False
        self._resumed = False
        self._websocket = None
        self._outbox = None
        if self._writer_task is not None:
            self._writer_task.cancel()
            self._writer_task = None

        self._set_state(NodeState.DISCONNECTED)

        if clean:
            _LOGGER.info("[NODE-%s] Disconnected", self.identifier)
            self._sink.notify(Event.NODE_DISCONNECT, self)
            return

        code = code or CLOSE_CODE_ABNORMAL
        _LOGGER.warning(
            "[NODE-%s] Connection closed abnormally (%d): %s",
            self.identifier,
            code,
            reason,
        )
        self._sink.notify(
            Event.NODE_ERROR,
            self,
            NodeConnectionError(
                f"WebSocket closed abnormally with code {code}: {reason}",
                code=code,
                reason=reason,
            ),
        )

        # The first attempt is not a retry
        if self.retry_attempts <= self.options.max_retry_attempts:
            self._schedule_retry()
            return

        _LOGGER.warning(
            "[NODE-%s] Giving up after %d connection attempts",
            self.identifier,
            self.retry_attempts,
        )
        self._sink.notify(
            Event.NODE_ERROR,
            self,
            RetriesExhaustedError(
                f"Node {self.identifier} gave up after {self.retry_attempts} attempts",
                code=code,
                reason=reason,
            ),
        )

    # -------------------------------------------------------------------------
    # Reconnection
    # -------------------------------------------------------------------------

    def _schedule_retry(self) -> None:
        self._cancel_retry()
        _LOGGER.info(
            "[NODE-%s] Reconnecting in %.1f seconds...",
            self.identifier,
            self.options.retry_interval,
        )
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(self.options.retry_interval, self._retry)

    def _retry(self) -> None:
        self._retry_handle = None
        self.connect()

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _set_state(self, state: str) -> None:
        if state != self.state:
            _LOGGER.info("[NODE-%s] State: %s -> %s", self.identifier, self.state, state)
            self.state = state
