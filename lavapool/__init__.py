"""Lavalink client for load-balanced playback across multiple nodes.

This package keeps a WebSocket connection to every configured Lavalink
node, creates guild players on the least loaded node and moves players to
another node when theirs goes away.

Example usage:
    from lavapool import Event, LavaPool, NodeOptions

    pool = LavaPool(
        nodes=[NodeOptions(hostname="127.0.0.1", password="youshallnotpass")],
        client_id="123456789012345678",
        send_ws=send_gateway_payload,
    )
    pool.connect()

    player = pool.create_player(guild_id, voice_channel_id)
    player.connect()
    player.queue.append(track)
    player.play()
"""

from .errors import (
    EmptyQueueError,
    LavaPoolError,
    MissingVoiceChannelError,
    NodeConnectionError,
    NodeUnavailableError,
    NoNodesAvailableError,
    PlayerDestroyedError,
    RetriesExhaustedError,
)
from .events import Event, EventEmitter, EventSink
from .node import Node, NodeOptions, NodeState
from .player import Player, PlayerState, PlayOptions, VoiceState
from .pool import LavaPool
from .protocol import CLIENT_VERSION, NodeStats, PlayerUpdate
from .track import Track

__version__ = CLIENT_VERSION

__all__ = [
    # Main client
    "LavaPool",
    "Node",
    "NodeOptions",
    "NodeState",
    # Players
    "Player",
    "PlayerState",
    "PlayOptions",
    "VoiceState",
    "Track",
    # Events
    "Event",
    "EventEmitter",
    "EventSink",
    # Protocol types
    "NodeStats",
    "PlayerUpdate",
    # Errors
    "LavaPoolError",
    "NoNodesAvailableError",
    "NodeUnavailableError",
    "EmptyQueueError",
    "MissingVoiceChannelError",
    "PlayerDestroyedError",
    "NodeConnectionError",
    "RetriesExhaustedError",
]
