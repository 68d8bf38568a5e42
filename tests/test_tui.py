import json

import pytest
import urwid

from config import DEFAULT_KEYMAP
from errors import RequestTimeout
from models import ConnectionStatus, SessionState, Track
from protocol import Event
from tui import PlayerTUI, fmt_duration, track_label
from ui_state import CommandResult, EventUpdate, SessionChanged, UiStateStore

SONGS = [
    {"uri": f"fuo://local/songs/{n}", "title": f"Song {n}", "artists": ["Band"], "duration": 60}
    for n in range(1, 4)
]


class StubClient:
    """Records the calls the TUI makes instead of talking to a daemon."""

    def __init__(self):
        self.store = UiStateStore(clock=lambda: 0.0)
        self.calls = []
        self.finished = False
        self.shut_down = False

    def _record(self, *call):
        self.calls.append(call)

    def toggle(self):
        self._record("toggle")

    def pause(self):
        self._record("pause")

    def resume(self):
        self._record("resume")

    def stop(self):
        self._record("stop")

    def next_track(self):
        self._record("next")

    def previous_track(self):
        self._record("previous")

    def seek_relative(self, delta):
        self._record("seek_relative", delta)

    def play(self, uri):
        self._record("play", uri)

    def search(self, query):
        self._record("search", query)

    def resync(self):
        self._record("resync")

    def shutdown(self, timeout=2.0):
        self.shut_down = True

    def start(self):
        pass

    def add_finish_listener(self, listener):
        pass


def event(topic, *args):
    return EventUpdate(Event(topic, json.dumps(list(args)).encode()))


class FakeLoop:
    """Collects alarms so tests can fire them by hand."""

    def __init__(self):
        self.alarms = []

    def set_alarm_in(self, seconds, callback):
        handle = (seconds, callback)
        self.alarms.append(handle)
        return handle

    def remove_alarm(self, handle):
        self.alarms.remove(handle)

    def fire_all(self):
        due, self.alarms = self.alarms, []
        for _, callback in due:
            callback(self, None)
        return len(due)


class TestPlayerTUI:
    """Tests for key dispatch and rendering without a terminal."""

    def setup_method(self):
        self.client = StubClient()
        self.tui = PlayerTUI(self.client, keymap=DEFAULT_KEYMAP, seek_step=10)

    def press(self, *keys):
        for key in keys:
            self.tui._handle_input(key)

    def test_keys_dispatch_commands(self):
        self.press(" ", "s", "n", "p", "r")
        assert self.client.calls == [("toggle",), ("stop",), ("next",), ("previous",), ("resync",)]

    def test_seek_keys(self):
        self.press("right", "left")
        assert self.client.calls == [("seek_relative", 10), ("seek_relative", -10)]

    def test_uppercase_falls_back_to_binding(self):
        self.press("N")
        assert self.client.calls == [("next",)]

    def test_unmapped_keys_are_ignored(self):
        self.press("x", "f5", ("mouse press", 1, 0, 0))
        assert self.client.calls == []

    def test_custom_keymap(self):
        tui = PlayerTUI(self.client, keymap={"j": "cursor_down", "z": "pause", "q": "quit"})
        tui._handle_input("z")
        tui._handle_input(" ")
        assert self.client.calls == [("pause",)]

    def test_quit(self):
        with pytest.raises(urwid.ExitMainLoop):
            self.press("q")
        assert self.client.shut_down
        assert not self.tui.running

    def test_render_now_playing(self):
        store = self.client.store
        store.dispatch(SessionChanged(SessionState("127.0.0.1:23333", ConnectionStatus.CONNECTED)))
        store.dispatch(event("player.metadata_changed", dict(SONGS[0], album="Demo")))
        store.dispatch(event("player.seeked", 30))
        self.tui._render(store.state)

        assert self.tui.track_text.text == "Track:  Song 1"
        assert self.tui.artist_text.text == "Artist: Band"
        assert self.tui.album_text.text == "Album:  Demo"
        assert self.tui.seek_time_text.text == "00:30 / 01:00"
        assert "syncing" in self.tui.header_text.text
        assert "(stale)" in self.tui.status_text.text

    def test_render_notice(self):
        store = self.client.store
        store.dispatch(CommandResult("command", "next", error=RequestTimeout("no reply")))
        self.tui._render(store.state)
        assert self.tui.notice_text.text == "next failed (RequestTimeout: no reply)"

    def test_refresh_skips_unchanged_state(self):
        store = self.client.store
        store.dispatch(event("player.duration_changed", 125))
        self.tui._refresh()
        assert self.tui.seek_time_text.text == "00:00 / 02:05"
        self.tui.seek_time_text.set_text("untouched")
        self.tui._refresh()
        assert self.tui.seek_time_text.text == "untouched"

    def test_notice_alarm_fires_once_per_notice(self):
        loop = self.tui.loop = FakeLoop()
        renders = []
        render = self.tui._render
        self.tui._render = lambda state: (renders.append(state.version), render(state))

        self.client.store.dispatch(CommandResult("command", "next", error=RequestTimeout("slow"),
                                                 received_at=1.0))
        self.tui._refresh()
        assert len(loop.alarms) == 1

        # Expiry redraws once and leaves nothing armed for an idle client
        assert loop.fire_all() == 1
        assert loop.fire_all() == 0
        self.tui._refresh()
        assert loop.alarms == []
        assert len(renders) == 2

    def test_newer_notice_replaces_pending_alarm(self):
        loop = self.tui.loop = FakeLoop()
        store = self.client.store
        store.dispatch(CommandResult("command", "next", error=RequestTimeout("slow"), received_at=1.0))
        self.tui._refresh()
        store.dispatch(CommandResult("command", "stop", error=RequestTimeout("slow"), received_at=2.0))
        self.tui._refresh()
        assert len(loop.alarms) == 1
        assert self.tui._notice_armed_at == 2.0

    def test_cursor_and_play_selected(self):
        self.client.store.dispatch(event("playlist.changed", SONGS))
        self.tui._render(self.client.store.state)

        self.press("down", "down", "down", "enter")
        assert self.client.calls == [("play", "fuo://local/songs/3")]
        self.press("up", "up", "up", "up", "enter")
        assert self.client.calls[-1] == ("play", "fuo://local/songs/1")

    def test_play_selected_on_empty_list(self):
        self.press("enter")
        assert self.client.calls == []

    def test_search_flow(self):
        self.press("/")
        assert self.tui.searching
        self.tui.search_edit.set_edit_text("  forty two ")
        # Bound keys type into the prompt instead of firing
        self.press("q")
        self.press("enter")

        assert not self.tui.searching
        assert self.client.calls == [("search", "forty two")]
        assert self.tui.panel == "library"

    def test_search_cancel(self):
        self.press("/")
        self.tui.search_edit.set_edit_text("abc")
        self.press("esc")
        assert not self.tui.searching
        assert self.client.calls == []
        assert self.tui.panel == "queue"

    def test_switch_panel(self):
        self.press("tab")
        assert self.tui.panel == "library"
        self.press("tab")
        assert self.tui.panel == "queue"


class TestFormatting:
    """Tests for display helpers."""

    def test_fmt_duration(self):
        assert fmt_duration(0) == "00:00"
        assert fmt_duration(61.9) == "01:01"
        assert fmt_duration(3725) == "01:02:05"
        assert fmt_duration(-5) == "00:00"

    def test_track_label(self):
        assert track_label(Track("fuo://x")) == "fuo://x"
        assert track_label(Track("fuo://x", "T", ("A", "B"), "Al")) == "T – A, B – Al"
