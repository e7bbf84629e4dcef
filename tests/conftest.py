"""Test configuration for lavapool."""

import asyncio
import json
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from websockets.protocol import State

from lavapool import LavaPool, NodeOptions, NodeState, Track
from lavapool import player as player_module


class FakeWebSocket:
    """In-memory stand-in for a websockets ClientConnection."""

    def __init__(self, headers: Optional[Dict[str, str]] = None) -> None:
        self.response = SimpleNamespace(headers=dict(headers or {}))
        self.state = State.OPEN
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._inbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.state is State.OPEN:
            self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._finish(code, reason)

    def feed(self, payload: Any) -> None:
        """Deliver an inbound text frame."""
        self._inbox.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def drop(self, code: int = 1006, reason: str = "") -> None:
        """Simulate the node going away."""
        self._finish(code, reason)

    def ops(self) -> List[str]:
        return [message["op"] for message in self.sent]

    def _finish(self, code: int, reason: str) -> None:
        if self.state is State.CLOSED:
            return
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(None)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Replaces websockets' connect(); records every attempt."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.sockets: List[FakeWebSocket] = []
        self.failures = 0
        self.response_headers: Dict[str, str] = {}

    async def __call__(self, uri: str, **kwargs: Any) -> FakeWebSocket:
        self.calls.append((uri, kwargs))
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("Connection refused")
        websocket = FakeWebSocket(headers=self.response_headers)
        self.sockets.append(websocket)
        return websocket

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


class RecordingSink:
    """Event sink that keeps every notification."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Tuple[Any, ...]]] = []

    def notify(self, event: str, *args: Any) -> None:
        self.events.append((event, args))

    def kinds(self) -> List[str]:
        return [event for event, _ in self.events]

    def args_for(self, event: str) -> List[Tuple[Any, ...]]:
        return [args for kind, args in self.events if kind == event]


async def settle(rounds: int = 10) -> None:
    """Let background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def attach_recorder(node: Any, connected: bool = True) -> List[Any]:
    """Replace node.send with a list append and optionally mark it connected."""
    sent: List[Any] = []
    node.send = sent.append
    if connected:
        node.state = NodeState.CONNECTED
    return sent


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def gateway() -> List[Tuple[str, Dict[str, Any]]]:
    """Payloads sent to the Discord gateway."""
    return []


@pytest.fixture
def make_pool(gateway, connector) -> Callable[..., LavaPool]:
    def factory(*hostnames: str, **options: Any) -> LavaPool:
        nodes = [NodeOptions(hostname=hostname, **options) for hostname in hostnames or ("node-a",)]
        return LavaPool(
            nodes=nodes,
            client_id="1000",
            send_ws=lambda guild_id, payload: gateway.append((guild_id, payload)),
            connector=connector,
        )

    return factory


@pytest.fixture
def clock(monkeypatch) -> List[float]:
    """Controllable millisecond clock used by players."""
    now = [1_000_000.0]
    monkeypatch.setattr(player_module, "_now_ms", lambda: now[0])
    return now


@pytest.fixture
def tracks() -> Dict[str, Track]:
    return {
        name: Track(encoded=f"QAAA{name}", duration=180_000)
        for name in ("A", "B", "C")
    }
