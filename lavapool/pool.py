"""Node registry and player orchestration.

``LavaPool`` owns the configured nodes and the guild players. It is the
event sink of every node: inbound messages update node load statistics and
player state before being forwarded to application listeners.

Example usage:
    pool = LavaPool(
        nodes=[NodeOptions(hostname="lavalink.local", password="secret")],
        client_id=bot.user.id,
        send_ws=lambda guild_id, payload: bot.shard_for(guild_id).send(payload),
    )
    pool.on(Event.NODE_ERROR, on_node_error)
    pool.connect()

    player = pool.create_player(guild_id, voice_channel_id)
    player.connect()
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .errors import NoNodesAvailableError
from .events import Event, EventEmitter
from .node import Connector, Node, NodeOptions, NodeState
from .player import Player
from .protocol import (
    DISPATCH_VOICE_SERVER_UPDATE,
    DISPATCH_VOICE_STATE_UPDATE,
    IncomingOp,
    NodeStats,
    PlayerUpdate,
    TrackEndReason,
    TrackEvent,
)

_LOGGER = logging.getLogger(__name__)

# Sends a payload on the Discord gateway shard that serves a guild
SendWS = Callable[[str, Dict[str, Any]], Any]


class LavaPool:
    """Registry of Lavalink nodes and guild players."""

    def __init__(
        self,
        nodes: Iterable[Union[NodeOptions, Mapping[str, Any]]],
        client_id: str,
        send_ws: SendWS,
        connector: Optional[Connector] = None,
    ) -> None:
        """Initialize the pool.

        Args:
            nodes: Node settings, in order of preference for ties
            client_id: Discord user id of the bot
            send_ws: Callable sending a gateway payload for a guild
            connector: WebSocket factory passed to every node
        """
        if not callable(send_ws):
            raise TypeError("send_ws must be callable")

        self.client_id = str(client_id)
        self.send_ws = send_ws
        self.events = EventEmitter()

        self._nodes: Dict[str, Node] = {}
        for options in nodes:
            if not isinstance(options, NodeOptions):
                options = NodeOptions.from_dict(options)
            node = Node(options, self.client_id, self, connector=connector)
            if node.identifier in self._nodes:
                raise ValueError(f"Duplicate node identifier: {node.identifier}")
            self._nodes[node.identifier] = node

        if not self._nodes:
            raise ValueError("At least one node is required")

        self._players: Dict[str, Player] = {}

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    @property
    def players(self) -> Dict[str, Player]:
        return dict(self._players)

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register an application listener, see ``Event``."""
        self.events.on(event, callback)

    def off(self, event: str, callback: Callable[..., Any]) -> None:
        self.events.off(event, callback)

    def get_node(self, identifier: str) -> Optional[Node]:
        return self._nodes.get(identifier)

    def get_player(self, guild_id: str) -> Optional[Player]:
        return self._players.get(str(guild_id))

    def connect(self) -> None:
        """Start connecting every node. Must be called from a running event loop."""
        for node in self._nodes.values():
            node.connect()

    async def disconnect(self) -> None:
        """Disconnect every node."""
        await asyncio.gather(*(node.disconnect() for node in self._nodes.values()))

    # -------------------------------------------------------------------------
    # Node selection and players
    # -------------------------------------------------------------------------

    def select_node(self, exclude: Optional[Node] = None) -> Optional[Node]:
        """Pick the connected node with the fewest players.

        Ties go to the node configured first. Returns None when no node is
        connected.
        """
        return self._least_loaded(exclude, {})

    def _least_loaded(self, exclude: Optional[Node], pending: Dict[str, int]) -> Optional[Node]:
        # pending: players assigned since the node's last stats report
        candidates = [
            node
            for node in self._nodes.values()
            if node.state == NodeState.CONNECTED and node is not exclude
        ]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda node: node.stats.players + pending.get(node.identifier, 0),
        )

    def create_player(
        self,
        guild_id: str,
        voice_channel_id: Optional[str],
        text_channel_id: Optional[str] = None,
        self_deaf: bool = False,
        self_mute: bool = False,
    ) -> Player:
        """Return the guild's player, creating it on the least loaded node.

        Raises:
            NoNodesAvailableError: No node is connected
        """
        guild_id = str(guild_id)
        player = self._players.get(guild_id)
        if player is not None:
            return player

        node = self.select_node()
        if node is None:
            raise NoNodesAvailableError("No available nodes!")

        player = Player(
            self,
            guild_id,
            voice_channel_id,
            node.identifier,
            text_channel_id=text_channel_id,
            self_deaf=self_deaf,
            self_mute=self_mute,
        )
        self._players[guild_id] = player
        _LOGGER.debug("[PLAYER-%s] Created on node %s", guild_id, node.identifier)
        return player

    def remove_player(self, guild_id: str) -> None:
        self._players.pop(str(guild_id), None)

    def move_players(self, source: Node, target: Optional[Node] = None) -> List[Player]:
        """Move every player bound to ``source``.

        Players go to ``target``, or to the best other connected node. Node
        stats only change on the next report, so players moved here are
        counted against their destination until then.

        Raises:
            NoNodesAvailableError: No other node is connected
        """
        moved = []
        pending: Dict[str, int] = {}
        for player in list(self._players.values()):
            if player.node_id != source.identifier:
                continue

            destination = target or self._least_loaded(source, pending)
            if destination is None:
                raise NoNodesAvailableError(
                    f"No node available to take players from {source.identifier}"
                )

            player.move_node(destination)
            pending[destination.identifier] = pending.get(destination.identifier, 0) + 1
            moved.append(player)

        return moved

    # -------------------------------------------------------------------------
    # Voice gateway
    # -------------------------------------------------------------------------

    def handle_voice_update(self, packet: Mapping[str, Any]) -> None:
        """Consume a Discord gateway dispatch carrying voice credentials.

        Feed every VOICE_STATE_UPDATE and VOICE_SERVER_UPDATE the bot
        receives; other packets are ignored. The node gets a voiceUpdate
        as soon as the session id, token and endpoint are all known.
        """
        event = packet.get("t")
        if event not in (DISPATCH_VOICE_STATE_UPDATE, DISPATCH_VOICE_SERVER_UPDATE):
            return

        data = packet.get("d") or {}
        if data.get("guild_id") is None:
            return

        player = self._players.get(str(data["guild_id"]))
        if player is None:
            return

        if event == DISPATCH_VOICE_STATE_UPDATE:
            if str(data.get("user_id")) != self.client_id:
                return

            if data.get("channel_id") is None:
                # Left or kicked; the node reports the disconnect itself
                player.voice_state.session_id = None
                return

            player.voice_channel_id = data["channel_id"]
            player.voice_state.session_id = data.get("session_id")
        else:
            player.voice_state.token = data.get("token")
            player.voice_state.endpoint = data.get("endpoint")

        if player.voice_state.complete:
            player.send_voice_update()

    # -------------------------------------------------------------------------
    # Event sink
    # -------------------------------------------------------------------------

    def notify(self, event: str, *args: Any) -> None:
        """Receive a notification from a node or player."""
        if event == Event.RAW:
            node, payload = args
            self._handle_payload(node, payload)

        self.events.notify(event, *args)

    def _handle_payload(self, node: Node, payload: Dict[str, Any]) -> None:
        op = payload.get("op")

        if op == IncomingOp.STATS:
            node.stats = NodeStats.from_dict(payload)
            return

        if op not in (IncomingOp.PLAYER_UPDATE, IncomingOp.EVENT):
            _LOGGER.debug("[NODE-%s] Unhandled op: %s", node.identifier, op)
            return

        player = self._players.get(str(payload.get("guildId")))
        if player is None:
            return

        if player.node_id != node.identifier:
            # Leftover from a node the player moved away from
            _LOGGER.debug(
                "[PLAYER-%s] Ignoring %s from previous node %s",
                player.guild_id,
                op,
                node.identifier,
            )
            return

        if op == IncomingOp.PLAYER_UPDATE:
            player.update_player(PlayerUpdate.from_dict(payload.get("state") or {}))
        else:
            self._handle_event(player, payload)

    def _handle_event(self, player: Player, payload: Dict[str, Any]) -> None:
        event_type = payload.get("type")

        if event_type == TrackEvent.TRACK_START:
            player.playing = True
            player.paused = False
            self.events.notify(Event.TRACK_START, player, player.current)

        elif event_type == TrackEvent.TRACK_END:
            self._handle_track_end(player, payload.get("reason"))

        elif event_type == TrackEvent.TRACK_EXCEPTION:
            self.events.notify(
                Event.TRACK_EXCEPTION, player, player.current, payload.get("exception")
            )

        elif event_type == TrackEvent.TRACK_STUCK:
            self.events.notify(
                Event.TRACK_STUCK, player, player.current, payload.get("thresholdMs")
            )

        elif event_type == TrackEvent.WEBSOCKET_CLOSED:
            self.events.notify(Event.WEBSOCKET_CLOSED, player, payload)

        else:
            _LOGGER.warning("[PLAYER-%s] Unknown event type: %s", player.guild_id, event_type)

    def _handle_track_end(self, player: Player, reason: Optional[str]) -> None:
        finished = player.current
        self.events.notify(Event.TRACK_END, player, finished, reason)

        if reason == TrackEndReason.REPLACED:
            return

        if reason == TrackEndReason.CLEANUP:
            player.playing = False
            return

        if (
            player.track_repeat
            and finished is not None
            and reason not in (TrackEndReason.STOPPED, TrackEndReason.LOAD_FAILED)
        ):
            player.play()
            return

        player.current = None
        if player.queue_repeat and finished is not None:
            player.queue.append(finished)

        if player.queue:
            player.play()
            return

        player.playing = False
        self.events.notify(Event.QUEUE_END, player)
