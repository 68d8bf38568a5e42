"""
Player Client - Integration layer for the playback daemon
Runs the session on a background I/O thread, keeps the UI store in sync and
exposes the playback commands the TUI dispatches.
"""

import sys
import threading
import time
from concurrent.futures import Future
from typing import Callable, List, Optional

import commands
from event_channel import EventChannel
from models import ConnectionStatus
from multiplexer import RequestMultiplexer
from protocol import Event
from session import Session
from ui_state import CommandResult, EventUpdate, SessionChanged, UiStateStore

# Topics the UI store reduces
UI_TOPICS = ("player.*", "live_lyric.*", "playlist.*")


class PlayerClient:
    """Manages all interaction with the daemon over one multiplexed session."""

    def __init__(self, endpoint: Optional[str] = None,
                 session: Optional[Session] = None,
                 store: Optional[UiStateStore] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        if session is None:
            session = Session(
                endpoint=endpoint,
                multiplexer=RequestMultiplexer(clock=clock),
                events=EventChannel(),
                clock=clock,
            )
        self.session = session
        self.multiplexer = session.multiplexer
        self.events = session.events
        self.store = store or UiStateStore(clock=clock)

        self.fatal_error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None
        self._finished = threading.Event()
        self._finish_listeners: List[Callable[[], None]] = []

        self._subscription = self.events.subscribe(UI_TOPICS, target=self._on_event)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self):
        """Start the background I/O thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._io_loop, name="fuo-io", daemon=True)
        self._thread.start()

    def shutdown(self, timeout: float = 2.0):
        """
        Stop the session: in-flight commands fail with ConnectionLost and the
        socket is released by the I/O thread on its way out.
        """
        self.session.stop()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                print("I/O thread did not stop in time", file=sys.stderr)

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    def add_finish_listener(self, listener: Callable[[], None]):
        self._finish_listeners.append(listener)

    def _io_loop(self):
        """
        Background thread: drives the session state machine and mirrors each
        transition into the UI store.
        """
        try:
            for state in self.session.run():
                self.store.dispatch(SessionChanged(state, self._clock()))
                if state.status is ConnectionStatus.CONNECTED:
                    # Events missed while disconnected are gone; ask for the truth
                    self.resync()
        except Exception as e:
            self.fatal_error = e
            print(f"ERROR: {e}", file=sys.stderr)
        finally:
            self.session.close()
            self._finished.set()
            for listener in self._finish_listeners:
                listener()

    def _on_event(self, event: Event):
        self.store.dispatch(EventUpdate(event, self._clock()))

    # ── Commands ─────────────────────────────────────────────────────────────

    def submit(self, command: str, label: Optional[str] = None,
               kind: str = "command", query: str = "") -> Future:
        """
        Send a command; its outcome (reply or failure) is reported to the
        UI store as a CommandResult. The returned future is the caller's own.
        """
        label = label or command.split()[0]
        future = self.multiplexer.submit(command)

        def _report(f: Future):
            if f.cancelled():
                return
            error = f.exception()
            self.store.dispatch(CommandResult(
                kind=kind,
                label=label,
                reply=None if error else f.result(),
                error=error,
                received_at=self._clock(),
                query=query,
            ))

        future.add_done_callback(_report)
        return future

    def resync(self):
        """Request the daemon's full status and queue."""
        self.submit(commands.status(), "status", kind="status")
        self.submit(commands.queue(), "queue", kind="queue")

    def toggle(self) -> Future:
        return self.submit(commands.toggle(), "play/pause")

    def pause(self) -> Future:
        return self.submit(commands.pause())

    def resume(self) -> Future:
        return self.submit(commands.resume())

    def stop(self) -> Future:
        return self.submit(commands.stop())

    def next_track(self) -> Future:
        return self.submit(commands.next_track())

    def previous_track(self) -> Future:
        return self.submit(commands.previous_track())

    def play(self, uri: str) -> Future:
        return self.submit(commands.play(uri))

    def seek(self, seconds: float) -> Future:
        return self.submit(commands.seek(seconds))

    def seek_relative(self, delta: float) -> Future:
        """
        Seek forward (positive) or backward (negative) by delta seconds.
        Clamps to track bounds so we never seek past the end.
        """
        state = self.store.state
        position = state.position(self._clock())
        if delta < 0:
            target = max(0.0, position + delta)
        elif state.duration > 0:
            target = min(max(0.0, state.duration - 1), position + delta)
        else:
            target = position + delta
        return self.seek(target)

    def search(self, query: str) -> Future:
        return self.submit(commands.search(query), "search", kind="search", query=query)
