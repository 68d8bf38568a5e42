"""
Terminal User Interface - fuo-tui
Reactive urwid front end: redraws when the UI store changes and turns
keystrokes into daemon commands through the configured keymap.

Layout (rows, top to bottom):
  [1]  Header bar   ── connection banner
  [N]  Now Playing  ── status · track info · seek bar · lyric · notice
  [5]  Console      ── captured stderr (connection events, failures)
  [M]  Queue / Library ── upcoming tracks or search results
  [1]  Footer bar   ── key bindings, or the search prompt
"""

import io
import os
import sys
import threading
from collections import deque
from datetime import datetime
from typing import Dict, List, Optional

import urwid

from commands import ACTIONS
from config import config
from models import PlayerState, Track
from ui_state import UiState


# ─── Console log interceptor ────────────────────────────────────────────────


class _ConsoleCapture(io.TextIOBase):
    """
    Drop-in replacement for sys.stderr that:
      • Stores the last N lines in a ring-buffer for the TUI console widget.
      • Passes everything through to the real stderr ONLY when the TUI is not
        active, so messages never bleed through the urwid layout.
    """

    MAX_LINES = 200

    def __init__(self, real_stderr):
        super().__init__()
        self._real = real_stderr
        self._buf = deque(maxlen=self.MAX_LINES)
        self._lock = threading.Lock()
        self._partial = ""
        # True while the urwid loop owns the screen
        self.tui_active: bool = False

    def write(self, text: str) -> int:
        if not self.tui_active:
            self._real.write(text)
            self._real.flush()
        with self._lock:
            self._partial += text
            while "\n" in self._partial:
                line, self._partial = self._partial.split("\n", 1)
                line = line.rstrip()
                if line:
                    ts = datetime.now().strftime("%H:%M:%S")
                    self._buf.append(f"[{ts}] {line}")
        return len(text)

    def flush(self):
        if not self.tui_active:
            self._real.flush()

    def get_lines(self) -> List[str]:
        with self._lock:
            return list(self._buf)

    def fileno(self):
        return self._real.fileno()


_console_capture: Optional[_ConsoleCapture] = None


def install_console_capture() -> _ConsoleCapture:
    """Route sys.stderr through the console ring buffer (idempotent)."""
    global _console_capture
    if _console_capture is None:
        _console_capture = _ConsoleCapture(sys.__stderr__)
        sys.stderr = _console_capture
    return _console_capture


# ─── Layout constants ───────────────────────────────────────────────────────

CONSOLE_ROWS = 5

KEY_LABELS = {
    " ": "SPACE",
    "enter": "ENTER",
    "tab": "TAB",
    "esc": "ESC",
    "up": "↑",
    "down": "↓",
    "left": "←",
    "right": "→",
}


def fmt_duration(seconds: float) -> str:
    total = int(max(0, seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def track_label(track: Track) -> str:
    parts = [track.title or track.uri]
    if track.artists_name:
        parts.append(track.artists_name)
    if track.album:
        parts.append(track.album)
    return " – ".join(parts)


class PlayerTUI:
    """Terminal User Interface for the playback daemon client."""

    def __init__(self, client, keymap: Optional[Dict[str, str]] = None,
                 seek_step: Optional[int] = None):
        self.client = client
        self.store = client.store
        self.keymap = dict(config.keymap if keymap is None else keymap)
        self.seek_step = config.seek_step if seek_step is None else seek_step
        self.running = False

        self.loop: Optional[urwid.MainLoop] = None
        self._wake_fd: Optional[int] = None
        self._tick_handle = None
        self._notice_handle = None
        # notice_at of the newest notice an expiry alarm was armed for
        self._notice_armed_at = None
        self._rendered_version = -1

        # Which list the cursor keys drive: "queue" or "library"
        self.panel = "queue"
        self.focus_index = 0
        self.searching = False

        self._setup_urwid()
        self._render(self.store.state)

    # ── urwid setup ──────────────────────────────────────────────────────────

    def _setup_urwid(self):
        self.palette = [
            ("header", "white,bold", "dark blue"),
            ("header_stale", "white,bold", "dark red"),
            ("footer", "white", "dark blue"),
            ("playing", "light green,bold", "default"),
            ("paused", "yellow,bold", "default"),
            ("stale", "dark gray", "default"),
            ("track_info", "white", "default"),
            ("lyric", "light cyan", "default"),
            ("notice", "light red,bold", "default"),
            ("queue_item", "light gray", "default"),
            ("queue_current", "black,bold", "light green"),
            ("queue_focused", "black,bold", "dark cyan"),
            ("seek_bar", "white", "dark gray"),
            ("seek_progress", "black", "light green"),
            ("console_text", "dark cyan", "default"),
            ("console_err", "light red", "default"),
        ]

        # ── Header ──
        self.header_text = urwid.Text("", align="center")
        self.header = urwid.AttrMap(self.header_text, "header")

        # ── Now Playing ──
        self.status_text = urwid.Text(("paused", "⏹  Stopped"))
        self.artist_text = urwid.Text("Artist: ---")
        self.album_text = urwid.Text("Album:  ---")
        self.track_text = urwid.Text("Track:  ---")
        self.seek_bar_progress = urwid.ProgressBar(
            "seek_bar", "seek_progress", current=0, done=100
        )
        self.seek_time_text = urwid.Text("00:00 / 00:00", align="center")
        self.lyric_text = urwid.Text("", align="center")
        self.notice_text = urwid.Text("")

        now_playing = urwid.Pile(
            [
                urwid.AttrMap(self.status_text, "track_info"),
                urwid.Divider(),
                urwid.AttrMap(self.artist_text, "track_info"),
                urwid.AttrMap(self.album_text, "track_info"),
                urwid.AttrMap(self.track_text, "track_info"),
                urwid.Divider(),
                urwid.AttrMap(self.seek_bar_progress, "seek_bar"),
                self.seek_time_text,
                urwid.Divider(),
                urwid.AttrMap(self.lyric_text, "lyric"),
                urwid.AttrMap(self.notice_text, "notice"),
            ]
        )
        self.now_playing_box = urwid.LineBox(
            urwid.Filler(urwid.Padding(now_playing, left=1, right=1), valign="top"),
            title="♪ Now Playing",
        )

        # ── Console panel ──
        self.console_walker = urwid.SimpleFocusListWalker(
            [urwid.Text(("console_text", "── console ready ──"))]
        )
        self.console_box = urwid.LineBox(
            urwid.BoxAdapter(urwid.ListBox(self.console_walker), CONSOLE_ROWS),
            title="System Console",
        )

        # ── Queue / library panel ──
        self.list_walker = urwid.SimpleFocusListWalker([])
        self.list_box = urwid.LineBox(urwid.ListBox(self.list_walker), title="Queue")

        self.body = urwid.Pile(
            [
                ("weight", 3, self.now_playing_box),
                (CONSOLE_ROWS + 2, self.console_box),
                ("weight", 2, self.list_box),
            ]
        )

        # ── Footer ──
        self.footer_text = urwid.Text(self._footer_markup(), align="center")
        self.footer = urwid.AttrMap(self.footer_text, "footer")
        self.search_edit = urwid.Edit("Search: ")

        self.frame = urwid.Frame(body=self.body, header=self.header, footer=self.footer)

    def _footer_markup(self) -> str:
        labels = []
        for key, action in self.keymap.items():
            name = KEY_LABELS.get(key, key.upper())
            labels.append(f"{name}={ACTIONS.get(action, action)}")
        return "  ".join(labels)

    # ── Rendering ────────────────────────────────────────────────────────────

    def _render(self, state: UiState):
        """Copy a state snapshot into the widgets."""
        now = self.store.now()
        self._rendered_version = state.version

        self.header_text.set_text(f"♫ fuo-tui  ·  {state.banner}")
        self.header.set_attr_map({None: "header_stale" if state.stale else "header"})

        suffix = "   (stale)" if state.stale else ""
        if state.player_state is PlayerState.PLAYING:
            self.status_text.set_text(("playing", f"▶  Playing{suffix}"))
        elif state.player_state is PlayerState.PAUSED:
            self.status_text.set_text(("paused", f"⏸  Paused{suffix}"))
        else:
            self.status_text.set_text(("stale" if state.stale else "paused", f"⏹  Stopped{suffix}"))

        track = state.track
        if track is None:
            self.artist_text.set_text("Artist: ---")
            self.album_text.set_text("Album:  ---")
            self.track_text.set_text("Track:  ---")
        else:
            self.artist_text.set_text(f"Artist: {track.artists_name or 'Unknown Artist'}")
            self.album_text.set_text(f"Album:  {track.album or 'Unknown Album'}")
            self.track_text.set_text(f"Track:  {track.title or track.uri}")

        self.lyric_text.set_text(state.lyric)
        if state.notice and now - state.notice_at < config.notice_seconds:
            self.notice_text.set_text(state.notice)
        else:
            self.notice_text.set_text("")

        self._render_clock(state, now)
        self._update_console()
        self._update_list(state)

    def _render_clock(self, state: UiState, now: float):
        position = state.position(now)
        if state.duration > 0:
            self.seek_bar_progress.set_completion(int(position / state.duration * 100))
        else:
            self.seek_bar_progress.set_completion(0)
        self.seek_time_text.set_text(f"{fmt_duration(position)} / {fmt_duration(state.duration)}")

    def _update_console(self):
        if _console_capture is None:
            return
        lines = _console_capture.get_lines()
        if not lines:
            return
        self.console_walker.clear()
        for line in lines[-CONSOLE_ROWS:]:
            attr = "console_err" if any(w in line for w in ("ERROR", "failed", "lost", "error")) else "console_text"
            self.console_walker.append(urwid.AttrMap(urwid.Text(line), attr))
        self.console_walker.set_focus(len(self.console_walker) - 1)

    def _items(self, state: UiState):
        return state.results if self.panel == "library" else state.queue

    def _update_list(self, state: UiState):
        items = self._items(state)
        if self.panel == "library":
            title = f"Library · {state.query!r} [TAB queue]" if state.query else "Library [TAB queue]"
        else:
            title = "Queue [TAB library]"
        self.list_box.set_title(title)

        self.list_walker.clear()
        if not items:
            empty = "  No results" if self.panel == "library" else "  Queue empty"
            self.list_walker.append(urwid.Text(empty))
            self.focus_index = 0
            return

        self.focus_index = max(0, min(self.focus_index, len(items) - 1))
        current_uri = state.track.uri if state.track else None
        for idx, track in enumerate(items):
            label = track_label(track)
            if idx == self.focus_index:
                item = urwid.AttrMap(urwid.Text(f"  » {idx + 1}. {label}"), "queue_focused")
            elif track.uri == current_uri:
                item = urwid.AttrMap(urwid.Text(f"  ▶ {idx + 1}. {label}"), "queue_current")
            else:
                item = urwid.AttrMap(urwid.Text(f"    {idx + 1}. {label}"), "queue_item")
            self.list_walker.append(item)
        self.list_walker.set_focus(self.focus_index)

    def _refresh(self):
        """Redraw from the store if it changed since the last render."""
        state = self.store.state
        if state.version != self._rendered_version:
            self._render(state)
        self._schedule_timers(state)

    def _schedule_timers(self, state: UiState):
        if self.loop is None:
            return
        ticking = state.player_state is PlayerState.PLAYING and not state.stale
        if ticking and self._tick_handle is None:
            self._tick_handle = self.loop.set_alarm_in(config.position_tick, self._on_tick)
        if state.notice and (self._notice_armed_at is None or state.notice_at > self._notice_armed_at):
            if self._notice_handle is not None:
                self.loop.remove_alarm(self._notice_handle)
            self._notice_armed_at = state.notice_at
            self._notice_handle = self.loop.set_alarm_in(config.notice_seconds, self._on_notice_expired)

    def _on_tick(self, loop=None, user_data=None):
        self._tick_handle = None
        state = self.store.state
        self._render_clock(state, self.store.now())
        self._schedule_timers(state)

    def _on_notice_expired(self, loop=None, user_data=None):
        self._notice_handle = None
        # Hides the expired notice; a newer one arms its own alarm via _refresh
        self._render(self.store.state)

    # ── Cross-thread wakeup ──────────────────────────────────────────────────

    def _notify(self, state=None):
        """Store/client listener; runs on the I/O thread."""
        fd = self._wake_fd
        if fd is None:
            return
        try:
            os.write(fd, b"!")
        except OSError:
            # Loop already torn down
            pass

    def _on_wake(self, data: bytes) -> bool:
        if self.client.finished or not self.running:
            self._quit()
        self._refresh()
        return True

    # ── Input handling ───────────────────────────────────────────────────────

    def _handle_input(self, key):
        # Mouse events arrive as tuples
        if not isinstance(key, str):
            return
        if self.searching:
            if key == "enter":
                self._finish_search(submit=True)
            elif key == "esc":
                self._finish_search(submit=False)
            return

        action = self.keymap.get(key)
        if action is None and len(key) == 1:
            action = self.keymap.get(key.lower())
        if action is None:
            # Unmapped keys are ignored
            return
        handler = getattr(self, f"_action_{action}", None)
        if handler is not None:
            handler()

    # ── Actions ──────────────────────────────────────────────────────────────

    def _action_toggle(self):
        self.client.toggle()

    def _action_pause(self):
        self.client.pause()

    def _action_resume(self):
        self.client.resume()

    def _action_stop(self):
        self.client.stop()

    def _action_next(self):
        self.client.next_track()

    def _action_previous(self):
        self.client.previous_track()

    def _action_seek_forward(self):
        self.client.seek_relative(+self.seek_step)

    def _action_seek_backward(self):
        self.client.seek_relative(-self.seek_step)

    def _action_cursor_up(self):
        self._move_focus(-1)

    def _action_cursor_down(self):
        self._move_focus(+1)

    def _move_focus(self, direction: int):
        items = self._items(self.store.state)
        if not items:
            return
        self.focus_index = max(0, min(len(items) - 1, self.focus_index + direction))
        self._update_list(self.store.state)

    def _action_play_selected(self):
        items = self._items(self.store.state)
        if not items or self.focus_index >= len(items):
            return
        self.client.play(items[self.focus_index].uri)

    def _action_switch_panel(self):
        self.panel = "library" if self.panel == "queue" else "queue"
        self.focus_index = 0
        self._update_list(self.store.state)

    def _action_search(self):
        self.searching = True
        self.search_edit.set_edit_text("")
        self.frame.footer = urwid.AttrMap(self.search_edit, "footer")
        self.frame.focus_position = "footer"

    def _finish_search(self, submit: bool):
        query = self.search_edit.get_edit_text().strip()
        self.searching = False
        self.frame.footer = self.footer
        self.frame.focus_position = "body"
        if submit and query:
            self.client.search(query)
            self.panel = "library"
            self.focus_index = 0
            self._update_list(self.store.state)

    def _action_resync(self):
        self.client.resync()

    def _action_quit(self):
        self._quit()

    def _quit(self):
        self.running = False
        # Pending commands fail with ConnectionLost; nothing is awaited
        self.client.shutdown()
        raise urwid.ExitMainLoop()

    # ── Run ──────────────────────────────────────────────────────────────────

    def request_exit(self):
        """Ask the loop to quit from a signal handler or another thread."""
        self.running = False
        self._notify()

    def run(self):
        self.loop = urwid.MainLoop(
            self.frame,
            palette=self.palette,
            unhandled_input=self._handle_input,
        )
        self._wake_fd = self.loop.watch_pipe(self._on_wake)
        self.store.add_listener(self._notify)
        self.client.add_finish_listener(self._notify)

        self.running = True
        if _console_capture is not None:
            _console_capture.tui_active = True
        try:
            self.client.start()
            self._refresh()
            self.loop.run()
        except KeyboardInterrupt:
            pass
        finally:
            self.running = False
            fd, self._wake_fd = self._wake_fd, None
            if fd is not None:
                self.loop.remove_watch_pipe(fd)
            if _console_capture is not None:
                _console_capture.tui_active = False
