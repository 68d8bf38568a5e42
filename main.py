"""
Main Orchestration - fuo-tui
Loads configuration, starts the daemon session and runs the terminal UI.
"""

import argparse
import signal
import sys
from typing import Optional

from client import PlayerClient
from config import config, parse_keymap
from errors import ConfigurationError
from tui import PlayerTUI, install_console_capture


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Terminal client for a remote playback daemon',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fuo-tui
  fuo-tui --endpoint 192.168.1.20:23333
  fuo-tui --endpoint unix:/run/user/1000/fuo.sock --bind j=cursor_down --bind k=cursor_up

Environment:
  FUO_ENDPOINT, FUO_REQUEST_TIMEOUT, FUO_RECONNECT_MAX_DELAY,
  FUO_INITIAL_ATTEMPTS, FUO_AUTH_SECRET, FUO_KEYMAP
        """
    )
    parser.add_argument(
        '--endpoint',
        help=f'Daemon address: host:port or unix:/path (default: {config.endpoint})'
    )
    parser.add_argument(
        '--request-timeout',
        type=float,
        help=f'Seconds to wait for each command reply (default: {config.request_timeout})'
    )
    parser.add_argument(
        '--reconnect-max-delay',
        type=float,
        help=f'Cap on the reconnect backoff in seconds (default: {config.reconnect_max_delay})'
    )
    parser.add_argument(
        '--attempts',
        type=int,
        help=f'Initial connection attempts before giving up (default: {config.initial_connect_attempts})'
    )
    parser.add_argument(
        '--bind',
        action='append',
        default=[],
        metavar='KEY=ACTION',
        help='Override a key binding (repeatable), e.g. --bind space=toggle'
    )
    return parser


def apply_args(args):
    """Fold command line overrides into the global config."""
    if args.endpoint:
        config.endpoint = args.endpoint
    if args.request_timeout is not None:
        config.request_timeout = args.request_timeout
    if args.reconnect_max_delay is not None:
        config.reconnect_max_delay = args.reconnect_max_delay
    if args.attempts is not None:
        config.initial_connect_attempts = args.attempts
    for binding in args.bind:
        for key, action in parse_keymap(binding).items():
            config.bind(key, action)


def main(argv: Optional[list] = None) -> int:
    """Main entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    try:
        apply_args(args)
        config.validate()
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    install_console_capture()
    print(f"Connecting to {config.endpoint}...", file=sys.stderr)

    client = PlayerClient()
    tui = PlayerTUI(client)

    def _signal_handler(signum, frame):
        tui.request_exit()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        tui.run()
    finally:
        client.shutdown()

    if client.fatal_error is not None:
        print(f"ERROR: {client.fatal_error}", file=sys.stderr)
        print(f"Make sure the daemon is running on {config.endpoint}", file=sys.stderr)
        return 1

    print("Goodbye!", file=sys.stderr)
    return 0


if __name__ == '__main__':
    sys.exit(main())
