import json

import pytest

from client import PlayerClient
from errors import ConnectError, ConnectionLost, RequestTimeout
from event_channel import EventChannel
from fake_daemon import wait_until
from models import ConnectionStatus, PlayerState
from multiplexer import RequestMultiplexer
from session import Backoff, Session
from ui_state import UiStateStore

SONG_42 = {
    "uri": "fuo://local/songs/42",
    "title": "Forty Two",
    "artists": ["Deep Thought"],
    "album": "Answers",
    "duration": 240,
}


def make_client(endpoint, request_timeout=2.0, **kw):
    kw.setdefault("auth_secret", "")
    kw.setdefault("subscriptions", ["player.*", "live_lyric.*", "playlist.*"])
    attempts = kw.pop("initial_connect_attempts", 3)
    session = Session(
        endpoint=endpoint,
        multiplexer=RequestMultiplexer(request_timeout=request_timeout),
        events=EventChannel(),
        backoff=Backoff(0.01, 2.0, 0.05),
        connect_timeout=1.0,
        initial_connect_attempts=attempts,
        **kw,
    )
    return PlayerClient(session=session, store=UiStateStore())


@pytest.fixture
def client_factory():
    clients = []

    def factory(*args, **kw):
        client = make_client(*args, **kw)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.shutdown()


def synced(client):
    state = client.store.state
    return state.connection is ConnectionStatus.CONNECTED and state.synced


class TestPlayerClient:
    """End-to-end tests against a scripted daemon."""

    def test_startup_resyncs(self, daemon, client_factory):
        daemon.status = {"state": "playing", "song": SONG_42, "position": 30}
        daemon.queue = [SONG_42]
        client = client_factory(daemon.endpoint)
        client.start()

        wait_until(lambda: synced(client) and client.store.state.queue)
        state = client.store.state
        assert not state.stale
        assert state.track.uri == SONG_42["uri"]
        assert state.player_state is PlayerState.PLAYING
        assert daemon.commands()[-2:] == ["status --format=json", "list --format=json"]

    def test_auth_precedes_subscriptions_and_status(self, daemon, client_factory):
        client = client_factory(daemon.endpoint, auth_secret="hunter2")
        client.start()
        wait_until(lambda: synced(client))
        assert daemon.commands()[:5] == [
            "auth hunter2",
            "sub player.*",
            "sub live_lyric.*",
            "sub playlist.*",
            "status --format=json",
        ]

    def test_play_then_track_changed(self, daemon, client_factory):
        def handler(command):
            if command == "play fuo://local/songs/42":
                daemon.push_event("player.metadata_changed", [SONG_42])
                daemon.push_event("player.state_changed", [2])
                return True, b""
            return daemon.default_handler(command)

        daemon.handler = handler
        client = client_factory(daemon.endpoint)
        client.start()
        wait_until(lambda: synced(client))

        reply = client.play("fuo://local/songs/42").result(timeout=2)
        assert reply.ok
        wait_until(lambda: client.store.state.player_state is PlayerState.PLAYING)
        state = client.store.state
        assert state.track.title == "Forty Two"
        assert state.duration == 240
        assert state.notice is None

    def test_refused_command_shows_notice(self, daemon, client_factory):
        def handler(command):
            if command.startswith("play"):
                return False, b"song not found"
            return daemon.default_handler(command)

        daemon.handler = handler
        client = client_factory(daemon.endpoint)
        client.start()
        wait_until(lambda: synced(client))

        assert client.play("fuo://nope").result(timeout=2).ok is False
        wait_until(lambda: client.store.state.notice)
        assert client.store.state.notice == "play failed (song not found)"
        assert client.store.state.connection is ConnectionStatus.CONNECTED

    def test_drop_mid_pause_then_resync_shows_daemon_state(self, daemon, client_factory):
        daemon.status = {"state": "playing", "song": SONG_42, "position": 10}

        def handler(command):
            if command == "pause":
                # Applied at the daemon but the reply never arrives
                daemon.status = dict(daemon.status, state="paused")
                return None
            return daemon.default_handler(command)

        daemon.handler = handler
        client = client_factory(daemon.endpoint)
        client.start()
        wait_until(lambda: synced(client) and client.store.state.player_state is PlayerState.PLAYING)

        future = client.pause()
        wait_until(lambda: "pause" in daemon.commands())
        daemon.drop_connections()

        assert isinstance(future.exception(timeout=2), ConnectionLost)
        wait_until(lambda: synced(client) and client.store.state.player_state is PlayerState.PAUSED)
        state = client.store.state
        assert not state.stale
        assert state.track.uri == SONG_42["uri"]
        assert daemon.accepted == 2

    def test_late_reply_after_timeout_is_discarded(self, daemon, client_factory):
        def handler(command):
            if command == "next":
                return None
            return daemon.default_handler(command)

        daemon.handler = handler
        client = client_factory(daemon.endpoint, request_timeout=0.2)
        client.start()
        wait_until(lambda: synced(client))

        future = client.next_track()
        assert isinstance(future.exception(timeout=2), RequestTimeout)
        wait_until(lambda: client.store.state.notice)
        assert client.store.state.notice.startswith("next failed (RequestTimeout")

        daemon.reply(daemon.token_for("next"), True, b"late")
        # The connection is still healthy and the next command is unaffected
        assert client.toggle().result(timeout=2).ok
        assert client.store.state.connection is ConnectionStatus.CONNECTED
        assert daemon.accepted == 1

    def test_initial_connect_failure_is_fatal(self, daemon, client_factory):
        daemon.refuse()
        client = client_factory(daemon.endpoint, initial_connect_attempts=2)
        finished = []
        client.add_finish_listener(lambda: finished.append(True))
        client.start()

        assert client.wait(timeout=3)
        assert isinstance(client.fatal_error, ConnectError)
        wait_until(lambda: finished == [True])
        assert client.store.state.connection is ConnectionStatus.DISCONNECTED

    def test_command_while_disconnected_fails_fast(self, daemon, client_factory):
        client = client_factory(daemon.endpoint)
        future = client.toggle()
        assert isinstance(future.exception(timeout=0), ConnectionLost)
        wait_until(lambda: client.store.state.notice)

    def test_seek_relative_clamps_to_track(self, daemon, client_factory):
        client = client_factory(daemon.endpoint)
        client.start()
        wait_until(lambda: synced(client))
        daemon.push_event("player.metadata_changed", [dict(SONG_42, duration=100)])
        daemon.push_event("player.seeked", [95.0])
        wait_until(lambda: client.store.state.position(client.store.now()) == 95.0)

        client.seek_relative(10).result(timeout=2)
        client.seek_relative(-200).result(timeout=2)
        assert [c for c in daemon.commands() if c.startswith("seek")] == ["seek 99", "seek 0"]

    def test_search_results_reach_store(self, daemon, client_factory):
        def handler(command):
            if command.startswith("search"):
                return True, json.dumps([SONG_42]).encode()
            return daemon.default_handler(command)

        daemon.handler = handler
        client = client_factory(daemon.endpoint)
        client.start()
        wait_until(lambda: synced(client))

        client.search("forty two").result(timeout=2)
        wait_until(lambda: client.store.state.results)
        assert client.store.state.query == "forty two"
        assert "search 'forty two' --format=json" in daemon.commands()

    def test_shutdown_stops_io_thread(self, daemon, client_factory):
        client = client_factory(daemon.endpoint)
        client.start()
        wait_until(lambda: synced(client))
        client.shutdown()
        assert client.finished
        assert client.fatal_error is None
        assert isinstance(client.toggle().exception(timeout=0), ConnectionLost)
