"""
Session - Connection lifecycle for the daemon socket
Connect, handshake (greeting, auth, subscriptions), serve, and reconnect
with capped exponential backoff until explicitly stopped.
"""

import selectors
import socket
import sys
import threading
import time
from typing import Callable, Iterable, Iterator, Optional

import commands
from config import config
from errors import (AuthenticationError, ConnectError, ConnectionLost,
                    ProtocolError, RequestError)
from event_channel import EventChannel
from models import ConnectionStatus, SessionState
from multiplexer import RequestMultiplexer
from protocol import Event, Greeting, Response, encode_request
from transport import Connection, connect


class Backoff:
    """Delay before the n-th consecutive reconnect attempt."""

    def __init__(self, initial: Optional[float] = None, multiplier: Optional[float] = None,
                 max_delay: Optional[float] = None):
        self.initial = config.reconnect_initial_delay if initial is None else initial
        self.multiplier = config.reconnect_multiplier if multiplier is None else multiplier
        self.max_delay = config.reconnect_max_delay if max_delay is None else max_delay

    def delay(self, failures: int) -> float:
        if failures < 1:
            return 0.0
        # Stop growing once capped so huge failure counts cannot overflow
        delay = self.initial
        for _ in range(failures - 1):
            if delay >= self.max_delay:
                break
            delay *= self.multiplier
        return min(self.max_delay, delay)


class Session:
    """
    Connection manager for one daemon endpoint.

    `run()` is a generator yielding every SessionState transition. Between
    yields it performs the blocking work of the current state: connecting,
    serving the socket while connected, or sleeping through a backoff delay.
    It is meant to be iterated by a single background thread, which thereby
    becomes the I/O thread owning the socket and the pending-request table.
    """

    def __init__(self, endpoint: Optional[str] = None,
                 multiplexer: Optional[RequestMultiplexer] = None,
                 events: Optional[EventChannel] = None,
                 backoff: Optional[Backoff] = None,
                 connect_timeout: Optional[float] = None,
                 auth_secret: Optional[str] = None,
                 subscriptions: Optional[Iterable[str]] = None,
                 initial_connect_attempts: Optional[int] = None,
                 connector: Callable[..., Connection] = connect,
                 clock: Callable[[], float] = time.monotonic):
        self.endpoint = endpoint or config.endpoint
        self.multiplexer = multiplexer or RequestMultiplexer(clock=clock)
        self.events = events or EventChannel()
        self.backoff = backoff or Backoff()
        self.connect_timeout = config.connect_timeout if connect_timeout is None else connect_timeout
        self.auth_secret = config.auth_secret if auth_secret is None else auth_secret
        self.subscriptions = list(config.subscriptions if subscriptions is None else subscriptions)
        self.initial_connect_attempts = (
            config.initial_connect_attempts if initial_connect_attempts is None
            else initial_connect_attempts
        )
        self._connector = connector
        self._clock = clock

        self._stopping = threading.Event()
        self._waker_r, self._waker_w = socket.socketpair()
        self._waker_r.setblocking(False)
        self._waker_w.setblocking(False)
        self.multiplexer.set_wakeup(self.wake)

        self._state = SessionState(endpoint=self.endpoint)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def wake(self):
        """Interrupt the I/O loop's select (safe from any thread)."""
        try:
            self._waker_w.send(b"\0")
        except OSError:
            # Buffer full (a wakeup is already pending) or already closed
            pass

    def stop(self):
        """Stop reconnecting and fail every outstanding request."""
        self._stopping.set()
        self.multiplexer.close()
        self.wake()

    def close(self):
        """Release the wakeup sockets once `run()` has finished."""
        self._waker_r.close()
        self._waker_w.close()

    # ── State machine ────────────────────────────────────────────────────────

    def run(self) -> Iterator[SessionState]:
        ever_connected = False
        failures = 0
        try:
            yield self._transition(ConnectionStatus.CONNECTING, attempt=1)
            while not self._stopping.is_set():
                error: RequestError = ConnectionLost("client shut down")
                try:
                    with self._connector(self.endpoint, timeout=self.connect_timeout) as conn:
                        self._handshake(conn)
                        failures = 0
                        ever_connected = True
                        self.multiplexer.open()
                        yield self._transition(ConnectionStatus.CONNECTED)
                        self._serve(conn)
                except ConnectError as e:
                    error = ConnectionLost(str(e))
                except ProtocolError as e:
                    print(f"Protocol error from {self.endpoint}: {e}", file=sys.stderr)
                    error = e
                except ConnectionLost as e:
                    error = e

                # Whatever was in flight has an unknown outcome at the daemon
                self.multiplexer.fail_all(error)
                self.events.reset()
                if self._stopping.is_set():
                    break

                failures += 1
                if not ever_connected and failures >= self.initial_connect_attempts:
                    yield self._transition(ConnectionStatus.DISCONNECTED,
                                           attempt=failures, last_error=str(error))
                    raise ConnectError(
                        f"could not connect to {self.endpoint} after {failures} attempts: {error}"
                    )

                delay = self.backoff.delay(failures)
                print(f"Connection to {self.endpoint} failed ({error}); "
                      f"retrying in {delay:.1f}s", file=sys.stderr)
                yield self._transition(ConnectionStatus.RECONNECTING, attempt=failures,
                                       last_error=str(error), retry_in=delay)
                if self._stopping.wait(delay):
                    break
                yield self._transition(ConnectionStatus.CONNECTING, attempt=failures + 1,
                                       last_error=str(error))

            yield self._transition(ConnectionStatus.DISCONNECTED)
        finally:
            self.multiplexer.fail_all(ConnectionLost("session closed"))

    def _transition(self, status: ConnectionStatus, attempt: int = 0,
                    last_error: Optional[str] = None,
                    retry_in: Optional[float] = None) -> SessionState:
        self._state = SessionState(
            endpoint=self.endpoint,
            status=status,
            attempt=attempt,
            last_error=last_error,
            retry_in=retry_in,
        )
        return self._state

    # ── Handshake ────────────────────────────────────────────────────────────

    def _handshake(self, conn: Connection):
        """
        Greeting, optional auth, then topic subscriptions. Runs before the
        multiplexer accepts any user command. Every wait also watches the
        waker, so `stop()` interrupts a stalled daemon.
        """
        sel = selectors.DefaultSelector()
        try:
            sel.register(conn, selectors.EVENT_READ, "conn")
            sel.register(self._waker_r, selectors.EVENT_READ, "wake")

            frame = self._receive(conn, sel, self._clock() + self.connect_timeout, "greeting")
            if not isinstance(frame, Greeting):
                raise ProtocolError(f"expected greeting, got {type(frame).__name__}")
            print(f"Connected to {self.endpoint}: {frame.text}", file=sys.stderr)

            if self.auth_secret:
                reply = self._call(conn, sel, commands.auth(self.auth_secret))
                if not reply.ok:
                    raise AuthenticationError(f"daemon rejected credentials: {reply.text()}")

            for pattern in self.subscriptions:
                reply = self._call(conn, sel, commands.subscribe(pattern))
                if not reply.ok:
                    print(f"Subscription to {pattern} refused: {reply.text()}", file=sys.stderr)
        finally:
            sel.close()

    def _call(self, conn: Connection, sel, command: str) -> Response:
        """Blocking request/response used only during the handshake."""
        token = self.multiplexer.next_token()
        conn.send(encode_request(token, command))
        deadline = self._clock() + self.connect_timeout
        while True:
            frame = self._receive(conn, sel, deadline, f"handshake command {command.split()[0]!r}")
            if isinstance(frame, Response) and frame.token == token:
                return frame
            self._route(frame)

    def _receive(self, conn: Connection, sel, deadline: float, what: str):
        """
        Wait for one frame until `deadline`.

        Raises:
            ConnectionLost: On timeout, read failure, or when the session is stopped
        """
        while not conn.pending:
            if self._stopping.is_set():
                raise ConnectionLost("client shut down")
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ConnectionLost(f"{what} timed out")
            for key, _ in sel.select(remaining):
                if key.data == "wake":
                    self._drain_waker()
                else:
                    conn.buffer_frames()
        return conn.receive()

    # ── Connected I/O loop ───────────────────────────────────────────────────

    def _serve(self, conn: Connection):
        """
        Pump the socket until stopped or the connection fails.

        Raises:
            ConnectionLost: If the connection drops
            ProtocolError: If the daemon sends an undecodable frame
        """
        for frame in conn.take_ready():
            self._route(frame)

        sel = selectors.DefaultSelector()
        try:
            sel.register(conn, selectors.EVENT_READ, "conn")
            sel.register(self._waker_r, selectors.EVENT_READ, "wake")
            while not self._stopping.is_set():
                self.multiplexer.flush(conn.send)

                timeout = None
                deadline = self.multiplexer.next_deadline()
                if deadline is not None:
                    timeout = max(0.0, deadline - self._clock())

                for key, _ in sel.select(timeout):
                    if key.data == "wake":
                        self._drain_waker()
                    else:
                        for frame in conn.read_frames():
                            self._route(frame)

                self.multiplexer.expire(self._clock())
        finally:
            sel.close()

    def _route(self, frame):
        if isinstance(frame, Response):
            self.multiplexer.on_response(frame)
        elif isinstance(frame, Event):
            self.events.publish(frame)
        else:
            print(f"Ignoring unexpected frame: {frame!r}", file=sys.stderr)

    def _drain_waker(self):
        try:
            while self._waker_r.recv(4096):
                pass
        except BlockingIOError:
            pass
