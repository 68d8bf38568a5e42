"""
Request Multiplexer - Correlates commands with their replies
Many callers share one connection; every command gets a fresh token and a
future that is completed exactly once.
"""

import itertools
import sys
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from config import config
from errors import ConnectionLost, RequestError, RequestTimeout
from protocol import Response, encode_request


@dataclass(frozen=True)
class Reply:
    """The daemon's answer to one command. `ok` is False for ERR replies."""

    token: str
    command: str
    ok: bool
    body: bytes

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return Response(self.token, self.ok, self.body).json()


@dataclass
class PendingRequest:
    token: str
    command: str
    future: Future
    submitted_at: float
    deadline: float


class RequestMultiplexer:
    """
    Owns the correlation table for one client.

    `submit` may be called from any thread; it only appends to the outbox and
    wakes the I/O loop. Everything else (`flush`, `on_response`, `expire`,
    `fail_all`) runs on the I/O thread, which is the sole owner of the
    pending table.
    """

    def __init__(self, request_timeout: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic,
                 wakeup: Optional[Callable[[], None]] = None):
        self.request_timeout = config.request_timeout if request_timeout is None else request_timeout
        self._clock = clock
        self._wakeup = wakeup

        # Guards the outbox and the accepting/closed flags only
        self._lock = threading.Lock()
        self._outbox = deque()
        self._accepting = False
        self._closed = False

        self._pending: Dict[str, PendingRequest] = {}
        self._tokens = itertools.count(1)

    def set_wakeup(self, wakeup: Callable[[], None]):
        self._wakeup = wakeup

    # ── Caller side (any thread) ─────────────────────────────────────────────

    def submit(self, command: str, timeout: Optional[float] = None) -> Future:
        """
        Queue a command for sending.

        Returns a future resolving to a Reply, or failing with
        RequestTimeout, ConnectionLost or ProtocolError. Commands submitted
        while no connection is accepting them fail straight away.
        """
        future = Future()
        timeout = self.request_timeout if timeout is None else timeout
        with self._lock:
            accepted = self._accepting
            if accepted:
                self._outbox.append((command, future, self._clock(), timeout))
            reason = "client shut down" if self._closed else "not connected to daemon"

        if not accepted:
            future.set_running_or_notify_cancel()
            future.set_exception(ConnectionLost(reason))
            return future

        if self._wakeup is not None:
            self._wakeup()
        return future

    @property
    def accepting(self) -> bool:
        with self._lock:
            return self._accepting

    def open(self):
        """Start accepting commands (called once the handshake succeeded)."""
        with self._lock:
            if not self._closed:
                self._accepting = True

    def close(self):
        """
        Stop accepting commands for good.
        Queued commands fail here; the I/O thread fails the in-flight ones
        when it observes the shutdown.
        """
        with self._lock:
            self._closed = True
            self._accepting = False
            queued = list(self._outbox)
            self._outbox.clear()
        for _, future, _, _ in queued:
            _fail(future, ConnectionLost("client shut down"))
        if self._wakeup is not None:
            self._wakeup()

    # ── I/O thread side ──────────────────────────────────────────────────────

    def next_token(self) -> str:
        """Allocate a token that no outstanding request is using."""
        while True:
            token = str(next(self._tokens))
            if token not in self._pending:
                return token

    def flush(self, send: Callable[[bytes], None]) -> int:
        """
        Send every queued command through `send`.
        A command is recorded as pending before it is written, so a failed
        write leaves it in the table for `fail_all`.
        """
        sent = 0
        while True:
            with self._lock:
                if not self._outbox:
                    break
                command, future, submitted_at, timeout = self._outbox.popleft()
            if not future.set_running_or_notify_cancel():
                # Cancelled by the caller before it was sent
                continue
            token = self.next_token()
            self._pending[token] = PendingRequest(
                token=token,
                command=command,
                future=future,
                submitted_at=submitted_at,
                deadline=submitted_at + timeout,
            )
            send(encode_request(token, command))
            sent += 1
        return sent

    def on_response(self, response: Response) -> bool:
        """
        Complete the caller waiting on `response.token`.
        Returns False when the token is unknown (stale reply), which is
        discarded without touching any other request.
        """
        pending = self._pending.pop(response.token, None)
        if pending is None:
            print(f"Discarding stale reply for token {response.token}", file=sys.stderr)
            return False
        pending.future.set_result(Reply(
            token=response.token,
            command=pending.command,
            ok=response.ok,
            body=response.body,
        ))
        return True

    def expire(self, now: Optional[float] = None) -> int:
        """Fail every pending request whose deadline has passed."""
        now = self._clock() if now is None else now
        expired = [p for p in self._pending.values() if p.deadline <= now]
        for pending in expired:
            del self._pending[pending.token]
            waited = now - pending.submitted_at
            _fail(pending.future, RequestTimeout(
                f"{pending.command!r} got no reply after {waited:.1f}s"
            ))
        return len(expired)

    def next_deadline(self) -> Optional[float]:
        if not self._pending:
            return None
        return min(p.deadline for p in self._pending.values())

    def fail_all(self, error: RequestError) -> int:
        """
        Fail every queued and in-flight request with a copy of `error` and
        stop accepting until `open` is called again.
        """
        with self._lock:
            self._accepting = False
            queued = list(self._outbox)
            self._outbox.clear()
        pending = list(self._pending.values())
        self._pending.clear()

        for _, future, _, _ in queued:
            _fail(future, type(error)(*error.args))
        for p in pending:
            _fail(p.future, type(error)(*error.args))
        return len(queued) + len(pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_tokens(self) -> List[str]:
        return list(self._pending)


def _fail(future: Future, error: Exception):
    if future.running() or future.set_running_or_notify_cancel():
        future.set_exception(error)
