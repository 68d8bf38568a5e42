"""
Transport - Socket ownership and message framing
Opens the daemon socket and turns its byte stream into discrete frames.
"""

import socket
from collections import deque
from dataclasses import dataclass
from typing import List, Optional, Union

from errors import ConnectError, ConnectionLost
from protocol import Frame, FrameDecoder

RECV_SIZE = 65536


@dataclass(frozen=True)
class Endpoint:
    """Daemon address: a TCP host/port pair or a Unix socket path."""

    host: str = ""
    port: int = 0
    path: str = ""

    @property
    def is_unix(self) -> bool:
        return bool(self.path)

    def __str__(self) -> str:
        if self.is_unix:
            return f"unix:{self.path}"
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_endpoint(text: str) -> Endpoint:
    """
    Parse "host:port", "[v6addr]:port", "unix:/path" or "/path".

    Raises:
        ValueError: If the text is not a recognised address
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("empty endpoint")
    if text.startswith("unix:"):
        path = text[len("unix:"):]
        if not path:
            raise ValueError(f"missing socket path in {text!r}")
        return Endpoint(path=path)
    if text.startswith("/"):
        return Endpoint(path=text)

    if text.startswith("["):
        host, sep, port = text[1:].partition("]:")
        if not sep:
            raise ValueError(f"malformed IPv6 endpoint: {text!r}")
    else:
        host, sep, port = text.rpartition(":")
        if not sep:
            raise ValueError(f"missing port in {text!r}")
    if not host:
        raise ValueError(f"missing host in {text!r}")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"invalid port in {text!r}") from None
    if not 0 < port_num < 65536:
        raise ValueError(f"port out of range in {text!r}")
    return Endpoint(host=host, port=port_num)


class Connection:
    """
    The only live handle to the daemon socket.

    Use as a context manager so the socket is released on every exit path
    (normal close, error, or generator shutdown).
    """

    def __init__(self, sock: socket.socket, endpoint: Endpoint, decoder: Optional[FrameDecoder] = None):
        self.endpoint = endpoint
        self._sock = sock
        self._decoder = decoder or FrameDecoder()
        self._ready = deque()
        self._closed = False

    def fileno(self) -> int:
        return self._sock.fileno()

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, data: bytes):
        """
        Write one framed message.

        Raises:
            ConnectionLost: If the socket is closed or the write fails
        """
        if self._closed:
            raise ConnectionLost("connection already closed")
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise ConnectionLost(f"send to {self.endpoint} failed: {e}") from e

    def read_frames(self) -> List[Frame]:
        """
        Perform one read and return every frame completed so far.
        Call when the socket is readable; frames left over from `receive`
        are returned first.

        Raises:
            ConnectionLost: If the daemon closed the connection or the read fails
            ProtocolError: If the stream cannot be decoded
        """
        frames = self.take_ready()
        frames.extend(self._decoder.feed(self._recv()))
        return frames

    def buffer_frames(self):
        """
        Perform one read, keeping the decoded frames for `receive`.
        Call when the socket is readable.
        """
        self._ready.extend(self._decoder.feed(self._recv()))

    @property
    def pending(self) -> int:
        """Number of decoded frames waiting to be returned."""
        return len(self._ready)

    def take_ready(self) -> List[Frame]:
        """Frames already decoded by an earlier `receive` but not yet returned."""
        frames = list(self._ready)
        self._ready.clear()
        return frames

    def receive(self, timeout: Optional[float] = None) -> Frame:
        """
        Block until exactly one frame is available and return it.

        Raises:
            ConnectionLost: On close, read failure or timeout
            ProtocolError: If the stream cannot be decoded
        """
        previous = self._sock.gettimeout()
        self._sock.settimeout(timeout)
        try:
            while not self._ready:
                self._ready.extend(self._decoder.feed(self._recv()))
        finally:
            if not self._closed:
                self._sock.settimeout(previous)
        return self._ready.popleft()

    def _recv(self) -> bytes:
        if self._closed:
            raise ConnectionLost("connection already closed")
        try:
            data = self._sock.recv(RECV_SIZE)
        except socket.timeout as e:
            raise ConnectionLost(f"timed out reading from {self.endpoint}") from e
        except OSError as e:
            raise ConnectionLost(f"read from {self.endpoint} failed: {e}") from e
        if not data:
            raise ConnectionLost("connection closed by daemon")
        return data

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already disconnected by the peer
            pass
        self._sock.close()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def connect(endpoint: Union[str, Endpoint], timeout: Optional[float] = None) -> Connection:
    """
    Open a connection to the daemon.

    Raises:
        ConnectError: If the address is invalid or the daemon is unreachable
    """
    if isinstance(endpoint, str):
        try:
            endpoint = parse_endpoint(endpoint)
        except ValueError as e:
            raise ConnectError(str(e)) from e

    try:
        if endpoint.is_unix:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.settimeout(timeout)
                sock.connect(endpoint.path)
            except OSError:
                sock.close()
                raise
        else:
            sock = socket.create_connection((endpoint.host, endpoint.port), timeout=timeout)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError as e:
        raise ConnectError(f"could not connect to {endpoint}: {e}") from e

    return Connection(sock, endpoint)
