"""Per-guild player.

A player tracks the voice connection, queue and transport state of one
guild and issues playback commands to the node it is bound to. The node is
stored by identifier and resolved through the owning pool.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Deque, Optional

from .errors import (
    EmptyQueueError,
    MissingVoiceChannelError,
    NodeUnavailableError,
    NoNodesAvailableError,
    PlayerDestroyedError,
)
from .events import Event
from .node import Node, NodeState
from .protocol import (
    Destroy,
    OutgoingMessage,
    Pause,
    Play,
    PlayerUpdate,
    Seek,
    Stop,
    VoiceUpdate,
    voice_state_leave,
    voice_state_update,
)
from .track import Track

if TYPE_CHECKING:
    from .pool import LavaPool

_LOGGER = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.monotonic() * 1000


class PlayerState:
    """Voice connection state constants."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class PlayOptions:
    """Optional parameters of a play command."""
    start_time: Optional[int] = None  # milliseconds
    end_time: Optional[int] = None  # milliseconds
    no_replace: Optional[bool] = None  # ignore if a track is already playing


@dataclass
class VoiceState:
    """Discord voice credentials, filled in from gateway events."""
    session_id: Optional[str] = None
    token: Optional[str] = None
    endpoint: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.session_id and self.token and self.endpoint)


class Player:
    """Playback state of one guild, bound to exactly one node.

    Players are created through ``LavaPool.create_player`` which picks the
    node. The node reference only changes through ``move_node``.
    """

    def __init__(
        self,
        pool: "LavaPool",
        guild_id: str,
        voice_channel_id: Optional[str],
        node_id: str,
        text_channel_id: Optional[str] = None,
        self_deaf: bool = False,
        self_mute: bool = False,
    ) -> None:
        self._pool = pool
        self.guild_id = guild_id
        self.node_id: Optional[str] = node_id

        self.voice_channel_id = voice_channel_id
        self.text_channel_id = text_channel_id

        self.self_deaf = self_deaf
        self.self_mute = self_mute

        self.current: Optional[Track] = None
        self.queue: Deque[Track] = deque()

        self.queue_repeat = False
        self.track_repeat = False

        self.position = 0
        self._position_timestamp = _now_ms()

        self.playing = False
        self.paused = False

        self.state = PlayerState.DISCONNECTED
        self.voice_state = VoiceState()

        self.moving = False
        self.destroyed = False

    def __repr__(self) -> str:
        return (
            f"<Player guild={self.guild_id!r} node={self.node_id!r} state={self.state} "
            f"playing={self.playing} queue={len(self.queue)}>"
        )

    @property
    def node(self) -> Optional[Node]:
        """The node this player is bound to, if it is still registered."""
        if self.node_id is None:
            return None
        return self._pool.get_node(self.node_id)

    @property
    def exact_position(self) -> float:
        """Position extrapolated from the last update, in milliseconds."""
        return self.position + (_now_ms() - self._position_timestamp)

    def connect(self) -> None:
        """Join the configured voice channel.

        The player becomes CONNECTED once the node reports the voice
        connection in a playerUpdate.
        """
        if self.state == PlayerState.CONNECTED:
            return

        self._require_node()

        if not self.voice_channel_id:
            raise MissingVoiceChannelError("No voice channel id provided")

        self.state = PlayerState.CONNECTING
        self._pool.send_ws(
            self.guild_id,
            voice_state_update(
                self.guild_id,
                self.voice_channel_id,
                self_mute=self.self_mute,
                self_deaf=self.self_deaf,
            ),
        )

    def disconnect(self) -> None:
        """Leave the voice channel."""
        if self.state == PlayerState.DISCONNECTED:
            return

        self._pool.send_ws(self.guild_id, voice_state_leave(self.guild_id))
        self.state = PlayerState.DISCONNECTED

    def destroy(self) -> None:
        """Leave voice, drop the node-side player and unregister this player.

        The player cannot be used afterwards; commands that reach the node
        raise ``PlayerDestroyedError``.
        """
        if self.destroyed:
            return

        self.disconnect()
        self._send(Destroy(guild_id=self.guild_id))
        self._pool.remove_player(self.guild_id)
        self.destroyed = True

    def play(self, options: Optional[PlayOptions] = None) -> None:
        """Play the next track.

        With track repeat enabled the current track is played again,
        otherwise the head of the queue becomes the current track.

        Raises:
            NoNodesAvailableError: The player has no node
            EmptyQueueError: There is nothing to play
            PlayerDestroyedError: The player was destroyed
        """
        node = self._require_node()

        if not self.queue and not (self.current is not None and self.track_repeat):
            raise EmptyQueueError("The queue is empty!")

        if self.current is None or not self.track_repeat:
            self.current = self.queue.popleft()

        options = options or PlayOptions()
        self._set_position(options.start_time or 0)

        node.send(
            Play(
                guild_id=self.guild_id,
                track=self.current.encoded,
                start_time=options.start_time,
                end_time=options.end_time,
                no_replace=options.no_replace,
            )
        )

    def set_track_loop(self, state: bool) -> None:
        self.track_repeat = state

    def set_queue_loop(self, state: bool) -> None:
        self.queue_repeat = state

    def skip(self, amount: int = 1) -> None:
        """Drop ``amount`` tracks from the head of the queue and stop playback.

        The node answers the stop with a TrackEndEvent, which starts the
        track that is then at the head of the queue.
        """
        if not self.playing:
            return

        if amount >= len(self.queue):
            self.queue.clear()
        else:
            for _ in range(amount):
                self.queue.popleft()

        self._send(Stop(guild_id=self.guild_id))

    def pause(self, state: bool = True) -> None:
        if not isinstance(state, bool):
            raise TypeError("State must be a boolean")

        self.paused = state
        self._send(Pause(guild_id=self.guild_id, pause=state))

    def seek(self, position: int) -> None:
        """Seek the current track, in milliseconds.

        Seeking past the end of the track skips it.
        """
        if not self.playing or self.current is None:
            return

        if isinstance(position, bool) or not isinstance(position, (int, float)):
            raise TypeError("Position must be a number")

        if position > self.current.duration:
            self.skip()
            return

        self._set_position(int(position))
        self._send(Seek(guild_id=self.guild_id, position=int(position)))

    def send_voice_update(self) -> None:
        """Forward the current voice credentials to the node."""
        if not self.voice_state.complete:
            _LOGGER.debug("[PLAYER-%s] Voice state incomplete, not sending", self.guild_id)
            return

        self._send(
            VoiceUpdate(
                guild_id=self.guild_id,
                session_id=self.voice_state.session_id,
                token=self.voice_state.token,
                endpoint=self.voice_state.endpoint,
            )
        )

    def update_player(self, state: PlayerUpdate) -> None:
        """Apply a playerUpdate reported by the node."""
        if state.position is not None:
            self._set_position(state.position)

        if state.connected:
            if self.state != PlayerState.CONNECTED:
                self.state = PlayerState.CONNECTED
        elif self.state != PlayerState.DISCONNECTED:
            self.state = PlayerState.DISCONNECTED

    def move_node(self, node: Node) -> None:
        """Move this player to another connected node.

        The queue, current track and position are kept; a playing track
        resumes on the new node where it was when the move started.

        Raises:
            TypeError: No node given
            NodeUnavailableError: The node is not connected
            PlayerDestroyedError: The player was destroyed
        """
        self._check_destroyed()
        if node is None:
            raise TypeError("You must provide a Node instance")
        if node.state != NodeState.CONNECTED:
            raise NodeUnavailableError(f"Node {node.identifier} is not connected")
        if node.identifier == self.node_id:
            return

        position = self.position if self.paused else self.exact_position
        if self.current is not None:
            position = min(position, self.current.duration)

        self.moving = True
        old_node = self.node

        if old_node is not None:
            old_node.send(Destroy(guild_id=self.guild_id))

        self.node_id = node.identifier
        _LOGGER.info(
            "[PLAYER-%s] Moving from %s to %s",
            self.guild_id,
            old_node.identifier if old_node else None,
            node.identifier,
        )

        if self.voice_state.complete:
            self.state = PlayerState.CONNECTING
            self.send_voice_update()
            self.state = PlayerState.CONNECTED

        # TODO: re-apply filters once filter state is tracked on the player
        if self.playing and self.current is not None:
            self._set_position(int(position))
            node.send(
                Play(
                    guild_id=self.guild_id,
                    track=self.current.encoded,
                    start_time=int(position),
                    pause=True if self.paused else None,
                )
            )

        self.moving = False
        self._pool.notify(Event.PLAYER_MOVE, self, old_node, node)

    def _check_destroyed(self) -> None:
        if self.destroyed:
            raise PlayerDestroyedError(f"Player for guild {self.guild_id} was destroyed")

    def _require_node(self) -> Node:
        self._check_destroyed()
        node = self.node
        if node is None:
            raise NoNodesAvailableError("No available nodes!")
        return node

    def _send(self, message: OutgoingMessage) -> None:
        self._check_destroyed()
        node = self.node
        if node is None:
            _LOGGER.debug("[PLAYER-%s] No node, dropping %s", self.guild_id, message.op)
            return
        node.send(message)

    def _set_position(self, position: int) -> None:
        self.position = position
        self._position_timestamp = _now_ms()
