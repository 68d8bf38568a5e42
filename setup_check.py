#!/usr/bin/env python3
"""
Setup and connectivity check for fuo-tui
"""

import argparse
import sys
from typing import Optional

from config import config
from errors import ClientError
from protocol import Greeting, Response, encode_request
from transport import connect


def check_python_deps() -> bool:
    """Check if Python dependencies are installed."""
    print("Checking Python dependencies...")

    try:
        import urwid
        print(f"✓ urwid {urwid.__version__}")
        return True
    except ImportError:
        print("❌ urwid not found. Install with: pip install urwid")
        return False


def check_daemon(endpoint: str, timeout: float = 3.0) -> bool:
    """Check that the daemon accepts a connection and answers a status request."""
    print(f"\nChecking daemon at {endpoint}...")

    try:
        with connect(endpoint, timeout=timeout) as conn:
            greeting = conn.receive(timeout=timeout)
            if not isinstance(greeting, Greeting):
                print(f"❌ Unexpected first frame: {greeting!r}")
                return False
            print(f"✓ Daemon says: {greeting.text}")

            conn.send(encode_request("check", "status --format=json"))
            while True:
                frame = conn.receive(timeout=timeout)
                if isinstance(frame, Response) and frame.token == "check":
                    break
            if not frame.ok:
                print(f"❌ Status request refused: {frame.text()}")
                return False
            print("✓ Status request answered")
            return True
    except ClientError as e:
        print(f"❌ {e}")
        print("   Make sure the daemon is running and listening on that address")
        return False


def run_checks(endpoint: str, timeout: float = 3.0) -> bool:
    """Run all system checks."""
    print("="*60)
    print("fuo-tui - System Check")
    print("="*60)

    checks = [
        check_python_deps(),
        check_daemon(endpoint, timeout),
    ]

    if not all(checks):
        print("\n❌ Some checks failed. Please fix the issues above.")
        return False

    print("\n" + "="*60)
    print("✓ All system checks passed!")
    print("="*60)
    return True


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Check that fuo-tui can reach its daemon')
    parser.add_argument(
        '--endpoint',
        default=config.endpoint,
        help='Daemon address (host:port or unix:/path, default: %(default)s)'
    )
    parser.add_argument(
        '--timeout',
        type=float,
        default=config.connect_timeout,
        help='Seconds to wait for each step (default: %(default)s)'
    )
    args = parser.parse_args(argv)
    return 0 if run_checks(args.endpoint, args.timeout) else 1


if __name__ == '__main__':
    sys.exit(main())
