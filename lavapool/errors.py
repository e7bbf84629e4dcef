"""Exceptions raised or notified by lavapool."""

from typing import Optional


class LavaPoolError(Exception):
    """Base class for lavapool errors."""


class NoNodesAvailableError(LavaPoolError, RuntimeError):
    """No connected node can serve the request."""


class NodeUnavailableError(LavaPoolError, RuntimeError):
    """The requested node is not connected."""


class EmptyQueueError(LavaPoolError, RuntimeError):
    """There is no track left to play."""


class PlayerDestroyedError(LavaPoolError, RuntimeError):
    """The player was destroyed and can no longer be used."""


class MissingVoiceChannelError(LavaPoolError, ValueError):
    """A player was asked to connect without a voice channel."""


class NodeConnectionError(LavaPoolError):
    """A node's WebSocket closed abnormally.

    Never raised to callers; passed along with "node_error" notifications.
    """

    def __init__(self, message: str, code: Optional[int] = None, reason: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.reason = reason


class RetriesExhaustedError(NodeConnectionError):
    """A node stopped reconnecting after its last allowed attempt."""
