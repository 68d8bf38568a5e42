"""
Configuration Management for fuo-tui
Provides all configurable parameters for the client.
"""

import os
from typing import Dict, List, Optional

from commands import ACTIONS
from errors import ConfigurationError
from transport import parse_endpoint


# Key (as urwid names it) -> action name from commands.ACTIONS
DEFAULT_KEYMAP: Dict[str, str] = {
    " ": "toggle",
    "s": "stop",
    "n": "next",
    "p": "previous",
    "right": "seek_forward",
    "left": "seek_backward",
    "up": "cursor_up",
    "down": "cursor_down",
    "enter": "play_selected",
    "tab": "switch_panel",
    "/": "search",
    "r": "resync",
    "q": "quit",
}


def parse_keymap(text: str) -> Dict[str, str]:
    """
    Parse "key=action,key=action" overrides.
    The key names "space" and "comma" stand for " " and ",".
    """
    bindings = {}
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, action = item.partition("=")
        if not sep or not key or not action.strip():
            raise ConfigurationError(f"malformed key binding: {item!r}")
        bindings[_key_name(key)] = action.strip()
    return bindings


def _key_name(key: str) -> str:
    aliases = {"space": " ", "comma": ","}
    name = key if key == " " else key.strip()
    return aliases.get(name.lower(), name)


class Config:
    """Central configuration for the client."""

    def __init__(self):
        # Malformed FUO_* values; defaults stand in until validate() reports them
        self.env_errors: List[str] = []

        # Daemon connection
        self.endpoint = os.getenv('FUO_ENDPOINT', '127.0.0.1:23333')
        self.connect_timeout = self._env_float('FUO_CONNECT_TIMEOUT', 3.0)
        self.auth_secret: Optional[str] = os.getenv('FUO_AUTH_SECRET') or None

        # Per-command deadline
        self.request_timeout = self._env_float('FUO_REQUEST_TIMEOUT', 5.0)

        # Reconnect backoff: initial * multiplier ** (n - 1), capped
        self.reconnect_initial_delay = self._env_float('FUO_RECONNECT_INITIAL_DELAY', 0.5)
        self.reconnect_multiplier = 2.0
        self.reconnect_max_delay = self._env_float('FUO_RECONNECT_MAX_DELAY', 30.0)

        # Consecutive failures tolerated before the first successful connect
        self.initial_connect_attempts = self._env_int('FUO_INITIAL_ATTEMPTS', 5)

        # Topics subscribed during the handshake
        self.subscriptions = ['player.*', 'live_lyric.*', 'playlist.*']

        # UI behaviour
        self.seek_step = 10                    # Seconds per seek key press
        self.position_tick = 1.0               # Seconds between clock redraws while playing
        self.notice_seconds = 4.0              # How long a failure notice stays visible

        self.keymap: Dict[str, str] = dict(DEFAULT_KEYMAP)
        overrides = os.getenv('FUO_KEYMAP')
        if overrides:
            try:
                self.keymap.update(parse_keymap(overrides))
            except ConfigurationError as e:
                self.env_errors.append(f"FUO_KEYMAP: {e}")

    def _env_float(self, name: str, default: float) -> float:
        value = os.getenv(name)
        if value is None or value == "":
            return default
        try:
            return float(value)
        except ValueError:
            self.env_errors.append(f"{name} must be a number, got {value!r}")
            return default

    def _env_int(self, name: str, default: int) -> int:
        value = os.getenv(name)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except ValueError:
            self.env_errors.append(f"{name} must be an integer, got {value!r}")
            return default

    def bind(self, key: str, action: str):
        self.keymap[_key_name(key)] = action

    def validate(self):
        """Validate configuration parameters."""
        if self.env_errors:
            raise ConfigurationError("; ".join(self.env_errors))

        try:
            parse_endpoint(self.endpoint)
        except ValueError as e:
            raise ConfigurationError(f"invalid endpoint: {e}") from e

        for name in ('connect_timeout', 'request_timeout', 'reconnect_initial_delay'):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.reconnect_multiplier < 1:
            raise ConfigurationError("reconnect_multiplier must be at least 1")
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            raise ConfigurationError(
                "reconnect_max_delay must not be below reconnect_initial_delay"
            )
        if self.initial_connect_attempts < 1:
            raise ConfigurationError("initial_connect_attempts must be at least 1")

        unknown = sorted({a for a in self.keymap.values() if a not in ACTIONS})
        if unknown:
            raise ConfigurationError(f"unknown keymap action(s): {', '.join(unknown)}")
        if 'quit' not in self.keymap.values():
            raise ConfigurationError("keymap must bind the quit action")

        return True


# Global config instance
config = Config()
