"""Lavalink v3 WebSocket message types and serialization.

This module implements the JSON message format exchanged with Lavalink
nodes, plus the voice gateway payloads the client application forwards to
Discord on behalf of a player.

Protocol Reference: https://github.com/lavalink-devs/Lavalink/blob/v3.7.0/IMPLEMENTATION.md
"""

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Tuple

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

CLIENT_NAME = "lavapool"
CLIENT_VERSION = "1.0.0"

# Clean close sent by Node.disconnect(), used to tell intentional closes
# apart from failures.
CLOSE_CODE_NORMAL = 1000
CLOSE_CODE_ABNORMAL = 1006
DISCONNECT_REASON = "lavapool: disconnect"

# Handshake headers
HEADER_AUTHORIZATION = "Authorization"
HEADER_USER_ID = "User-Id"
HEADER_CLIENT_NAME = "Client-Name"
HEADER_RESUME_KEY = "Resume-Key"
HEADER_SESSION_RESUMED = "Session-Resumed"

# Discord gateway opcode for voice state updates
GATEWAY_VOICE_STATE_UPDATE = 4

# Discord gateway dispatch events carrying voice credentials
DISPATCH_VOICE_STATE_UPDATE = "VOICE_STATE_UPDATE"
DISPATCH_VOICE_SERVER_UPDATE = "VOICE_SERVER_UPDATE"


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------


class IncomingOp(str):
    """Ops sent by a Lavalink node."""
    PLAYER_UPDATE = "playerUpdate"
    STATS = "stats"
    EVENT = "event"


class TrackEvent(str):
    """Event types carried by the "event" op."""
    TRACK_START = "TrackStartEvent"
    TRACK_END = "TrackEndEvent"
    TRACK_EXCEPTION = "TrackExceptionEvent"
    TRACK_STUCK = "TrackStuckEvent"
    WEBSOCKET_CLOSED = "WebSocketClosedEvent"


class TrackEndReason(str):
    """Reasons reported with TrackEndEvent."""
    FINISHED = "FINISHED"
    LOAD_FAILED = "LOAD_FAILED"
    STOPPED = "STOPPED"
    REPLACED = "REPLACED"
    CLEANUP = "CLEANUP"


# -----------------------------------------------------------------------------
# Client Messages (Client -> Node)
# -----------------------------------------------------------------------------


class OutgoingMessage:
    """Base class for ops sent to a node."""
    op: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError

    def to_json(self) -> str:
        """Serialize to JSON for WebSocket text message."""
        return json.dumps(self.to_dict())


@dataclass
class ConfigureResuming(OutgoingMessage):
    """Asks the node to keep our session alive after an unclean disconnect."""
    op: ClassVar[str] = "configureResuming"

    key: str
    timeout: int  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "key": self.key, "timeout": self.timeout}


@dataclass
class Destroy(OutgoingMessage):
    """Discards the node-side player of a guild."""
    op: ClassVar[str] = "destroy"

    guild_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "guildId": self.guild_id}


@dataclass
class Play(OutgoingMessage):
    """Starts playing an encoded track.

    Optional fields are only put on the wire when set.
    """
    op: ClassVar[str] = "play"

    guild_id: str
    track: str
    start_time: Optional[int] = None  # milliseconds
    end_time: Optional[int] = None  # milliseconds
    no_replace: Optional[bool] = None
    pause: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "op": self.op,
            "guildId": self.guild_id,
            "track": self.track,
        }

        if self.start_time is not None:
            payload["startTime"] = self.start_time
        if self.end_time is not None:
            payload["endTime"] = self.end_time
        if self.no_replace is not None:
            payload["noReplace"] = self.no_replace
        if self.pause is not None:
            payload["pause"] = self.pause

        return payload


@dataclass
class Stop(OutgoingMessage):
    op: ClassVar[str] = "stop"

    guild_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "guildId": self.guild_id}


@dataclass
class Pause(OutgoingMessage):
    op: ClassVar[str] = "pause"

    guild_id: str
    pause: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "guildId": self.guild_id, "pause": self.pause}


@dataclass
class Seek(OutgoingMessage):
    op: ClassVar[str] = "seek"

    guild_id: str
    position: int  # milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "guildId": self.guild_id, "position": self.position}


@dataclass
class VoiceUpdate(OutgoingMessage):
    """Forwards the Discord voice credentials of a guild to the node."""
    op: ClassVar[str] = "voiceUpdate"

    guild_id: str
    session_id: str
    token: str
    endpoint: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op": self.op,
            "guildId": self.guild_id,
            "sessionId": self.session_id,
            "event": {
                "token": self.token,
                "endpoint": self.endpoint,
                "guild_id": self.guild_id,
            },
        }


# -----------------------------------------------------------------------------
# Node Messages (Node -> Client)
# -----------------------------------------------------------------------------


@dataclass
class PlayerUpdate:
    """State carried by a playerUpdate op."""
    connected: bool
    position: Optional[int] = None  # milliseconds, absent when idle
    time: int = 0  # node wall clock, milliseconds

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlayerUpdate":
        """Parse from the "state" object of a playerUpdate op."""
        return cls(
            connected=bool(data.get("connected", False)),
            position=data.get("position"),
            time=data.get("time", 0),
        )


@dataclass
class FrameStats:
    sent: int = -1
    nulled: int = -1
    deficit: int = -1


@dataclass
class NodeStats:
    """Load statistics periodically pushed by a node."""
    players: int = 0
    playing_players: int = 0
    uptime: int = 0
    memory: Dict[str, int] = field(default_factory=dict)
    cpu: Dict[str, float] = field(default_factory=dict)
    frame_stats: Optional[FrameStats] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeStats":
        """Parse from a stats op."""
        frame_stats = None
        if data.get("frameStats"):
            frames = data["frameStats"]
            frame_stats = FrameStats(
                sent=frames.get("sent", -1),
                nulled=frames.get("nulled", -1),
                deficit=frames.get("deficit", -1),
            )

        return cls(
            players=data.get("players", 0),
            playing_players=data.get("playingPlayers", 0),
            uptime=data.get("uptime", 0),
            memory=data.get("memory") or {},
            cpu=data.get("cpu") or {},
            frame_stats=frame_stats,
        )


# -----------------------------------------------------------------------------
# JSON Message Parsing
# -----------------------------------------------------------------------------


def parse_json_message(text: str) -> Tuple[str, Dict[str, Any]]:
    """Parse a JSON WebSocket text message.

    Args:
        text: JSON string

    Returns:
        Tuple of (op, payload_dict)

    Raises:
        ValueError: If the text is not a JSON object
    """
    msg = json.loads(text)
    if not isinstance(msg, dict):
        raise ValueError(f"Expected a JSON object, got {type(msg).__name__}")
    return msg.get("op", ""), msg


# -----------------------------------------------------------------------------
# Voice Gateway Payloads
# -----------------------------------------------------------------------------


def voice_state_update(
    guild_id: str,
    channel_id: Optional[str],
    self_mute: bool = False,
    self_deaf: bool = False,
) -> Dict[str, Any]:
    """Build the gateway payload that joins or moves to a voice channel."""
    return {
        "op": GATEWAY_VOICE_STATE_UPDATE,
        "d": {
            "guild_id": guild_id,
            "channel_id": channel_id,
            "self_mute": self_mute,
            "self_deaf": self_deaf,
        },
    }


def voice_state_leave(guild_id: str) -> Dict[str, Any]:
    """Build the gateway payload that leaves the voice channel."""
    return {
        "op": GATEWAY_VOICE_STATE_UPDATE,
        "d": {
            "guild_id": guild_id,
            "channel_id": None,
        },
    }
