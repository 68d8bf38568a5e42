"""
UI State Store - Single source of truth for what the TUI displays
State changes only through `apply`, a pure reducer over events, command
results and session transitions.
"""

import sys
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, List, Optional, Tuple, Union

from errors import ProtocolError
from models import (ConnectionStatus, PlayerState, Progress, SessionState, Track,
                    parse_duration)
from multiplexer import Reply
from protocol import Event

TOPIC_STATE_CHANGED = "player.state_changed"
TOPIC_TRACK_CHANGED = "player.metadata_changed"
TOPIC_SEEKED = "player.seeked"
TOPIC_DURATION_CHANGED = "player.duration_changed"
TOPIC_QUEUE_CHANGED = "playlist.changed"
TOPIC_LYRIC_CHANGED = "live_lyric.sentence_changed"


@dataclass(frozen=True)
class UiState:
    """Everything the render loop needs, as one immutable snapshot."""

    track: Optional[Track] = None
    progress: Progress = field(default_factory=Progress)
    duration: float = 0.0
    player_state: PlayerState = PlayerState.STOPPED
    queue: Tuple[Track, ...] = ()
    results: Tuple[Track, ...] = ()
    query: str = ""
    lyric: str = ""

    endpoint: str = ""
    connection: ConnectionStatus = ConnectionStatus.DISCONNECTED
    attempt: int = 0
    retry_in: Optional[float] = None
    last_error: Optional[str] = None
    stale: bool = True
    synced: bool = False

    notice: Optional[str] = None
    notice_at: float = 0.0
    version: int = 0

    def position(self, now: float) -> float:
        pos = self.progress.current(now)
        if self.duration > 0:
            return min(pos, self.duration)
        return pos

    @property
    def banner(self) -> str:
        where = self.endpoint or "daemon"
        if self.connection is ConnectionStatus.CONNECTED:
            if not self.synced:
                return f"Connected to {where} · syncing…"
            return f"Connected to {where}"
        if self.connection is ConnectionStatus.CONNECTING:
            if self.attempt > 1:
                return f"Connecting to {where} (attempt {self.attempt})…"
            return f"Connecting to {where}…"
        if self.connection is ConnectionStatus.RECONNECTING:
            retry = f" · retry in {self.retry_in:.1f}s" if self.retry_in is not None else ""
            reason = f": {self.last_error}" if self.last_error else ""
            return f"Connection lost{reason}{retry}"
        if self.last_error:
            return f"Disconnected: {self.last_error}"
        return "Disconnected"


@dataclass(frozen=True)
class EventUpdate:
    event: Event
    received_at: float = 0.0


@dataclass(frozen=True)
class CommandResult:
    """
    Outcome of a submitted command.
    `kind` selects how a successful reply is applied: "status", "queue",
    "search" or "command" (no payload to apply).
    """

    kind: str
    label: str
    reply: Optional[Reply] = None
    error: Optional[BaseException] = None
    received_at: float = 0.0
    query: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None and self.reply is not None and self.reply.ok


@dataclass(frozen=True)
class SessionChanged:
    session: SessionState
    received_at: float = 0.0


Update = Union[EventUpdate, CommandResult, SessionChanged]


def apply(state: UiState, update: Update) -> UiState:
    """
    Return the state after `update`. Never mutates `state`; the version is
    bumped only when something visible changed.

    Raises:
        ProtocolError: If an event or reply payload has an unexpected shape
    """
    if isinstance(update, EventUpdate):
        new = _apply_event(state, update.event, update.received_at)
    elif isinstance(update, CommandResult):
        new = _apply_result(state, update)
    elif isinstance(update, SessionChanged):
        new = _apply_session(state, update.session, update.received_at)
    else:
        raise TypeError(f"unsupported update: {update!r}")

    if new == state:
        return state
    return replace(new, version=state.version + 1)


# ── Events ───────────────────────────────────────────────────────────────────


def _apply_event(state: UiState, event: Event, now: float) -> UiState:
    args = event.args()
    try:
        if event.topic == TOPIC_STATE_CHANGED:
            return _with_player_state(state, PlayerState.from_wire(args[0]), now)

        if event.topic == TOPIC_TRACK_CHANGED:
            metadata = args[0] if args else None
            if not metadata:
                return replace(state, track=None, duration=0.0,
                               progress=Progress(0.0, now, state.progress.paused))
            track = Track.from_dict(metadata)
            position = float(metadata.get("position") or 0.0)
            # Title and position switch in the same step
            return replace(
                state,
                track=track,
                duration=track.duration,
                progress=Progress(position, now, state.progress.paused),
            )

        if event.topic == TOPIC_SEEKED:
            if len(args) > 1 and args[1] is not None:
                uri = str(args[1])
                if state.track is None or state.track.uri != uri:
                    # Position of a track that is not the displayed one
                    return state
            return replace(state, progress=state.progress.seeked(float(args[0]), now))

        if event.topic == TOPIC_DURATION_CHANGED:
            return replace(state, duration=max(0.0, float(args[0])))

        if event.topic == TOPIC_QUEUE_CHANGED:
            songs = args[0] if args else []
            return replace(state, queue=_tracks(songs))

        if event.topic == TOPIC_LYRIC_CHANGED:
            return replace(state, lyric=str(args[0]) if args and args[0] else "")
    except (IndexError, KeyError, TypeError, ValueError, AttributeError) as e:
        raise ProtocolError(f"bad {event.topic} payload: {e}") from e

    return state


def _with_player_state(state: UiState, player_state: PlayerState, now: float) -> UiState:
    if player_state is PlayerState.PLAYING:
        progress = state.progress.resume(now)
    elif player_state is PlayerState.PAUSED:
        progress = state.progress.pause(now)
    else:
        progress = Progress(0.0, now, paused=True)
    return replace(state, player_state=player_state, progress=progress)


def _tracks(songs: Any) -> Tuple[Track, ...]:
    if isinstance(songs, dict):
        songs = songs.get("songs") or []
    return tuple(Track.from_dict(s) for s in songs or [])


# ── Command results ──────────────────────────────────────────────────────────


def _apply_result(state: UiState, result: CommandResult) -> UiState:
    now = result.received_at
    if not result.ok:
        if result.error is not None:
            reason = f"{type(result.error).__name__}: {result.error}"
        elif result.reply is not None:
            reason = result.reply.text() or "refused by daemon"
        else:
            reason = "no reply"
        return replace(state, notice=f"{result.label} failed ({reason})", notice_at=now)

    if result.kind == "command":
        # Only a later user command clears a failure; background resyncs leave it
        return replace(state, notice=None, notice_at=0.0)

    payload = result.reply.json()
    try:
        if result.kind == "status":
            return _apply_status(state, payload, now)
        if result.kind == "queue":
            return replace(state, queue=_tracks(payload))
        if result.kind == "search":
            return replace(state, results=_tracks(payload), query=result.query,
                           notice=None, notice_at=0.0)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ProtocolError(f"bad {result.kind} reply: {e}") from e
    raise ValueError(f"unknown result kind: {result.kind!r}")


def _apply_status(state: UiState, status: dict, now: float) -> UiState:
    """Replace playback state with the daemon's authoritative snapshot."""
    player_state = PlayerState.from_wire(status.get("state") or 0)
    song = status.get("song")
    track = Track.from_dict(song) if song else None
    duration = parse_duration(status.get("duration")) or (track.duration if track else 0.0)
    position = float(status.get("position") or 0.0)
    lyric = status.get("lyric-s", state.lyric) if track else ""

    return replace(
        state,
        track=track,
        duration=duration,
        progress=Progress(position, now, paused=player_state is not PlayerState.PLAYING),
        player_state=player_state,
        lyric=lyric or "",
        synced=True,
        stale=state.connection is not ConnectionStatus.CONNECTED,
    )


# ── Session transitions ──────────────────────────────────────────────────────


def _apply_session(state: UiState, session: SessionState, now: float) -> UiState:
    fields = dict(
        endpoint=session.endpoint,
        connection=session.status,
        attempt=session.attempt,
        retry_in=session.retry_in,
        last_error=session.last_error,
        synced=False,
        stale=True,
    )
    if session.status is not ConnectionStatus.CONNECTED and not state.progress.paused:
        # Keep the last known track and queue but stop the clock
        fields["progress"] = state.progress.pause(now)
    return replace(state, **fields)


# ── Store ────────────────────────────────────────────────────────────────────


class UiStateStore:
    """
    Holds the current UiState and serializes every write.

    `dispatch` may be called from any thread; each update is applied fully
    before the next one starts, and readers only ever see complete immutable
    snapshots.
    """

    def __init__(self, initial: Optional[UiState] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._state = initial or UiState()
        self._clock = clock
        self._cond = threading.Condition(threading.Lock())
        self._listeners: List[Callable[[UiState], None]] = []

    @property
    def state(self) -> UiState:
        return self._state

    def now(self) -> float:
        return self._clock()

    def add_listener(self, listener: Callable[[UiState], None]):
        with self._cond:
            self._listeners.append(listener)

    def dispatch(self, update: Update) -> UiState:
        with self._cond:
            old = self._state
            try:
                new = apply(old, update)
            except ProtocolError as e:
                print(f"Ignoring malformed update: {e}", file=sys.stderr)
                return old
            self._state = new
            changed = new is not old
            if changed:
                self._cond.notify_all()
            listeners = list(self._listeners)

        if changed:
            for listener in listeners:
                listener(new)
        return new

    def wait_for_change(self, version: int, timeout: Optional[float] = None) -> UiState:
        """Block until the state version differs from `version` (or timeout)."""
        with self._cond:
            self._cond.wait_for(lambda: self._state.version != version, timeout)
            return self._state
