"""Lifecycle notifications and the listener registry that receives them."""

import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List, Protocol

_LOGGER = logging.getLogger(__name__)


class Event:
    """Notification kinds."""
    NODE_CONNECT = "node_connect"
    NODE_DISCONNECT = "node_disconnect"
    NODE_RESUME = "node_resume"
    NODE_ERROR = "node_error"
    RAW = "raw"
    TRACK_START = "track_start"
    TRACK_END = "track_end"
    TRACK_EXCEPTION = "track_exception"
    TRACK_STUCK = "track_stuck"
    WEBSOCKET_CLOSED = "websocket_closed"
    QUEUE_END = "queue_end"
    PLAYER_MOVE = "player_move"


class EventSink(Protocol):
    """Anything that can receive notifications from nodes and players."""

    def notify(self, event: str, *args: Any) -> None:
        ...


class EventEmitter:
    """Dispatches notifications to registered callbacks.

    Callbacks run synchronously in registration order. A failing callback
    is logged and does not prevent the remaining ones from running.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register a callback for an event kind."""
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable[..., Any]) -> None:
        """Unregister a callback. Unknown callbacks are ignored."""
        try:
            self._listeners[event].remove(callback)
        except ValueError:
            pass

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def notify(self, event: str, *args: Any) -> None:
        """Call every callback registered for ``event``."""
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception as e:
                _LOGGER.warning("Listener error for %s: %s", event, e)
