"""
Models - Value types shared by the session layer and the UI
Track descriptors, player state, the progress clock and session snapshots.
"""

from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple


class PlayerState(IntEnum):
    """Playback state as reported by the daemon."""

    STOPPED = 0
    PAUSED = 1
    PLAYING = 2

    @classmethod
    def from_wire(cls, value) -> "PlayerState":
        """Accept either the numeric code or the state name ("playing")."""
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"unknown player state: {value!r}") from None
        return cls(int(value))


class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def parse_duration(value, milliseconds: bool = False) -> float:
    """
    Convert a daemon duration field to seconds.
    "mm:ss" (or "hh:mm:ss") strings are read as clock time in either unit;
    numbers and numeric strings are in the unit of the field they came from
    (`duration_ms` fields pass milliseconds=True).
    """
    if value is None or value == "":
        return 0.0
    divisor = 1000.0 if milliseconds else 1.0
    if isinstance(value, (int, float)):
        return float(value) / divisor
    text = str(value).strip()
    if ":" in text:
        seconds = 0.0
        for part in text.split(":"):
            seconds = seconds * 60 + float(part or 0)
        return seconds
    return float(text) / divisor


@dataclass(frozen=True)
class Track:
    """A track descriptor as displayed in now-playing, queue and search panels."""

    uri: str
    title: str = ""
    artists: Tuple[str, ...] = ()
    album: str = ""
    duration: float = 0.0
    provider: str = ""

    @property
    def artists_name(self) -> str:
        return ", ".join(a for a in self.artists if a)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Track":
        """
        Build a track from any of the daemon's song shapes:
        brief songs (identifier, artists_name, album_name, duration_ms)
        and player metadata (uri, artists list, album).
        """
        artists = data.get("artists")
        if isinstance(artists, str):
            artists = [artists]
        elif not artists:
            name = data.get("artists_name") or ""
            artists = [a.strip() for a in name.split(",")] if name else []

        uri = data.get("uri") or data.get("identifier") or ""

        if "duration" in data:
            duration = parse_duration(data.get("duration"))
        else:
            duration = parse_duration(data.get("duration_ms"), milliseconds=True)

        return cls(
            uri=str(uri),
            title=data.get("title") or "",
            artists=tuple(str(a) for a in artists),
            album=data.get("album") or data.get("album_name") or "",
            duration=duration,
            provider=data.get("provider") or "",
        )


@dataclass(frozen=True)
class Progress:
    """
    Playback position clock.

    Stores the last position the daemon reported together with the monotonic
    time it was observed at; the displayed position is derived on demand so
    the value itself never needs a background writer.
    """

    position: float = 0.0
    observed_at: float = 0.0
    paused: bool = True

    def current(self, now: float) -> float:
        if self.paused:
            return self.position
        return max(0.0, self.position + (now - self.observed_at))

    def seeked(self, position: float, now: float) -> "Progress":
        return replace(self, position=max(0.0, position), observed_at=now)

    def pause(self, now: float) -> "Progress":
        return Progress(position=self.current(now), observed_at=now, paused=True)

    def resume(self, now: float) -> "Progress":
        return Progress(position=self.current(now), observed_at=now, paused=False)


@dataclass(frozen=True)
class SessionState:
    """Immutable snapshot of the connection manager's state."""

    endpoint: str
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    attempt: int = 0
    last_error: Optional[str] = None
    retry_in: Optional[float] = None
