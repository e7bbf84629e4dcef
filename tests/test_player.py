"""Unit tests for the guild player state machine."""

import pytest

from conftest import attach_recorder
from lavapool import NodeState, PlayerState, PlayOptions
from lavapool.errors import (
    EmptyQueueError,
    MissingVoiceChannelError,
    NodeUnavailableError,
    NoNodesAvailableError,
    PlayerDestroyedError,
)
from lavapool.events import Event
from lavapool.protocol import Destroy, Pause, Play, PlayerUpdate, Seek, Stop, VoiceUpdate


@pytest.fixture
def pool(make_pool):
    return make_pool("node-a", "node-b")


@pytest.fixture
def sent(pool):
    """Messages sent to node-a, on which players are created."""
    return attach_recorder(pool.get_node("node-a"))


@pytest.fixture
def sent_b(pool):
    """Messages sent to node-b, which starts disconnected."""
    return attach_recorder(pool.get_node("node-b"), connected=False)


@pytest.fixture
def player(pool, sent):
    return pool.create_player("42", "900")


def with_voice(player):
    player.voice_state.session_id = "session"
    player.voice_state.token = "token"
    player.voice_state.endpoint = "eu.discord.media"
    return player


class TestPlayerVoice:
    """Test joining and leaving voice."""

    def test_connect_dispatches_voice_state(self, player, gateway):
        player.self_deaf = True

        player.connect()

        assert player.state == PlayerState.CONNECTING
        assert gateway == [
            (
                "42",
                {
                    "op": 4,
                    "d": {
                        "guild_id": "42",
                        "channel_id": "900",
                        "self_mute": False,
                        "self_deaf": True,
                    },
                },
            )
        ]

    def test_connect_requires_voice_channel(self, player):
        player.voice_channel_id = None

        with pytest.raises(MissingVoiceChannelError, match="No voice channel"):
            player.connect()

        assert player.state == PlayerState.DISCONNECTED

    def test_connect_requires_node(self, player):
        player.node_id = None

        with pytest.raises(NoNodesAvailableError):
            player.connect()

    def test_connect_when_connected_is_noop(self, player, gateway):
        player.state = PlayerState.CONNECTED

        player.connect()

        assert gateway == []

    def test_connected_only_after_player_update(self, player):
        player.connect()
        assert player.state == PlayerState.CONNECTING

        player.update_player(PlayerUpdate(connected=True, position=0))

        assert player.state == PlayerState.CONNECTED

    def test_disconnect(self, player, gateway):
        player.connect()
        gateway.clear()

        player.disconnect()

        assert player.state == PlayerState.DISCONNECTED
        assert gateway == [("42", {"op": 4, "d": {"guild_id": "42", "channel_id": None}})]

    def test_disconnect_when_disconnected_is_noop(self, player, gateway):
        player.disconnect()

        assert gateway == []

    def test_destroy(self, pool, player, sent, gateway):
        player.connect()

        player.destroy()

        assert player.state == PlayerState.DISCONNECTED
        assert sent == [Destroy(guild_id="42")]
        assert pool.get_player("42") is None
        assert player.destroyed

    def test_destroy_is_terminal(self, pool, player, sent, tracks):
        player.queue.append(tracks["A"])
        player.destroy()
        sent.clear()

        with pytest.raises(PlayerDestroyedError):
            player.play()
        with pytest.raises(PlayerDestroyedError):
            player.pause()
        with pytest.raises(PlayerDestroyedError):
            player.connect()

        assert sent == []

    def test_destroy_twice(self, player, sent):
        player.destroy()
        player.destroy()

        assert sent == [Destroy(guild_id="42")]

    def test_send_voice_update(self, player, sent):
        with_voice(player).send_voice_update()

        assert sent == [
            VoiceUpdate(
                guild_id="42",
                session_id="session",
                token="token",
                endpoint="eu.discord.media",
            )
        ]

    def test_send_voice_update_needs_credentials(self, player, sent):
        player.voice_state.session_id = "session"

        player.send_voice_update()

        assert sent == []


class TestPlayerPlay:
    """Test track selection."""

    def test_play_dequeues_head(self, player, sent, tracks):
        player.queue.extend([tracks["A"], tracks["B"]])

        player.play()

        assert player.current == tracks["A"]
        assert list(player.queue) == [tracks["B"]]
        assert sent == [Play(guild_id="42", track=tracks["A"].encoded)]

    def test_play_empty_queue(self, player):
        with pytest.raises(EmptyQueueError, match="queue is empty"):
            player.play()

    def test_play_advances_without_track_repeat(self, player, tracks):
        player.current = tracks["A"]
        player.queue.append(tracks["B"])

        player.play()

        assert player.current == tracks["B"]
        assert not player.queue

    def test_play_repeats_current_track(self, player, sent, tracks):
        player.current = tracks["A"]
        player.set_track_loop(True)
        player.queue.append(tracks["B"])

        player.play()

        assert player.current == tracks["A"]
        assert list(player.queue) == [tracks["B"]]
        assert sent[0].track == tracks["A"].encoded

    def test_track_repeat_without_current_uses_queue(self, player, tracks):
        player.set_track_loop(True)
        player.queue.append(tracks["A"])

        player.play()

        assert player.current == tracks["A"]

    def test_play_options(self, player, sent, tracks):
        player.queue.append(tracks["A"])

        player.play(PlayOptions(start_time=1000, end_time=5000, no_replace=True))

        assert sent[0].to_dict() == {
            "op": "play",
            "guildId": "42",
            "track": tracks["A"].encoded,
            "startTime": 1000,
            "endTime": 5000,
            "noReplace": True,
        }

    def test_play_requires_node(self, player, tracks):
        player.queue.append(tracks["A"])
        player.node_id = None

        with pytest.raises(NoNodesAvailableError):
            player.play()

    def test_loop_setters(self, player, sent):
        player.set_track_loop(True)
        player.set_queue_loop(True)

        assert player.track_repeat
        assert player.queue_repeat
        assert sent == []


class TestPlayerTransport:
    """Test skip, pause and seek."""

    @pytest.fixture
    def playing(self, player, sent, tracks):
        player.current = tracks["A"]
        player.queue.extend([tracks["A"], tracks["B"], tracks["C"]])
        player.playing = True
        return player

    def test_skip_removes_from_queue(self, playing, sent, tracks):
        playing.skip(2)

        assert list(playing.queue) == [tracks["C"]]
        assert sent == [Stop(guild_id="42")]

    def test_skip_more_than_queue(self, playing):
        playing.skip(5)

        assert list(playing.queue) == []

    def test_skip_when_not_playing(self, player, sent, tracks):
        player.queue.append(tracks["A"])

        player.skip()

        assert list(player.queue) == [tracks["A"]]
        assert sent == []

    def test_pause(self, player, sent):
        player.pause()
        player.pause(False)

        assert not player.paused
        assert sent == [Pause(guild_id="42", pause=True), Pause(guild_id="42", pause=False)]

    def test_pause_requires_bool(self, player):
        with pytest.raises(TypeError, match="boolean"):
            player.pause("yes")

    def test_seek(self, playing, sent):
        playing.seek(60_000)

        assert sent == [Seek(guild_id="42", position=60_000)]
        assert playing.position == 60_000

    def test_seek_past_end_skips(self, playing, sent, tracks):
        playing.seek(tracks["A"].duration + 1)

        assert sent == [Stop(guild_id="42")]
        assert list(playing.queue) == [tracks["B"], tracks["C"]]

    def test_seek_requires_number(self, playing):
        with pytest.raises(TypeError, match="number"):
            playing.seek("10")

    def test_seek_when_not_playing(self, player, sent):
        player.seek(1000)

        assert sent == []


class TestPlayerPosition:
    """Test position tracking."""

    def test_update_player_sets_position(self, player, clock):
        player.update_player(PlayerUpdate(connected=True, position=5000))

        assert player.position == 5000
        assert player.exact_position == 5000

    def test_exact_position_extrapolates(self, player, clock):
        player.update_player(PlayerUpdate(connected=True, position=5000))
        clock[0] += 1200

        assert player.exact_position == 6200

    def test_exact_position_is_monotonic(self, player, clock):
        player.update_player(PlayerUpdate(connected=True, position=5000))
        readings = []

        for step in (0, 1, 250, 0, 4000):
            clock[0] += step
            readings.append(player.exact_position)

        assert readings == sorted(readings)

    def test_update_without_position_keeps_position(self, player, clock):
        player.update_player(PlayerUpdate(connected=True, position=5000))

        player.update_player(PlayerUpdate(connected=True))

        assert player.position == 5000

    def test_update_disconnected(self, player):
        player.state = PlayerState.CONNECTED

        player.update_player(PlayerUpdate(connected=False))

        assert player.state == PlayerState.DISCONNECTED


class TestPlayerMoveNode:
    """Test migration between nodes."""

    @pytest.fixture
    def target(self, pool, sent_b):
        node = pool.get_node("node-b")
        node.state = NodeState.CONNECTED
        return node

    def test_move_playing_player(self, pool, player, sent, sent_b, target, clock, tracks):
        with_voice(player)
        player.current = tracks["A"]
        player.playing = True
        player.update_player(PlayerUpdate(connected=True, position=30_000))
        clock[0] += 1500
        moves = []
        pool.on(Event.PLAYER_MOVE, lambda *args: moves.append(args))

        player.move_node(target)

        assert sent == [Destroy(guild_id="42")]
        assert sent_b == [
            VoiceUpdate(
                guild_id="42",
                session_id="session",
                token="token",
                endpoint="eu.discord.media",
            ),
            Play(guild_id="42", track=tracks["A"].encoded, start_time=31_500),
        ]
        assert player.node is target
        assert player.state == PlayerState.CONNECTED
        assert not player.moving
        assert moves == [(player, pool.get_node("node-a"), target)]

    def test_move_idle_player(self, player, sent_b, target):
        player.move_node(target)

        assert sent_b == []
        assert player.node_id == "node-b"
        assert not player.moving

    def test_move_paused_player_keeps_position(self, player, sent_b, target, clock, tracks):
        player.current = tracks["A"]
        player.playing = True
        player.paused = True
        player.update_player(PlayerUpdate(connected=True, position=10_000))
        clock[0] += 5000

        player.move_node(target)

        assert sent_b == [
            Play(guild_id="42", track=tracks["A"].encoded, start_time=10_000, pause=True)
        ]

    def test_move_requires_node(self, player):
        with pytest.raises(TypeError, match="Node instance"):
            player.move_node(None)

    def test_move_to_disconnected_node(self, pool, player, sent_b):
        with pytest.raises(NodeUnavailableError, match="not connected"):
            player.move_node(pool.get_node("node-b"))

        assert player.node_id == "node-a"

    def test_move_destroyed_player(self, player, sent_b, target):
        player.destroy()

        with pytest.raises(PlayerDestroyedError):
            player.move_node(target)

        assert player.node_id == "node-a"
        assert sent_b == []

    def test_move_to_same_node(self, pool, player, sent):
        player.move_node(pool.get_node("node-a"))

        assert sent == []
        assert not player.moving
