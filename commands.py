"""
Commands - Daemon command strings and the user action table
The daemon grammar is opaque to the session layer; only these builders know it.
"""

import shlex
from typing import Dict

STATUS = "status --format=json"
QUEUE = "list --format=json"


def status() -> str:
    return STATUS


def queue() -> str:
    return QUEUE


def play(uri: str) -> str:
    return f"play {uri}"


def toggle() -> str:
    return "toggle"


def pause() -> str:
    return "pause"


def resume() -> str:
    return "resume"


def stop() -> str:
    return "stop"


def next_track() -> str:
    return "next"


def previous_track() -> str:
    return "previous"


def seek(seconds: float) -> str:
    """Absolute seek within the current track."""
    return f"seek {max(0, int(seconds))}"


def search(query: str) -> str:
    return f"search {shlex.quote(query)} --format=json"


def auth(secret: str) -> str:
    return f"auth {secret}"


def subscribe(pattern: str) -> str:
    return f"sub {pattern}"


# User-facing actions the keymap may bind, with their footer labels
ACTIONS: Dict[str, str] = {
    "toggle": "Play/Pause",
    "pause": "Pause",
    "resume": "Resume",
    "stop": "Stop",
    "next": "Next",
    "previous": "Prev",
    "seek_forward": "Seek+",
    "seek_backward": "Seek-",
    "cursor_up": "Up",
    "cursor_down": "Down",
    "play_selected": "Play",
    "switch_panel": "Queue/Library",
    "search": "Search",
    "resync": "Resync",
    "quit": "Quit",
}
