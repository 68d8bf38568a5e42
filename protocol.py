"""Line-headed, length-delimited wire protocol spoken with the daemon.

Every frame is a header line followed by a body of the announced length and
a trailing CRLF. The daemon greets each new connection with one bare line.

Greeting (server -> client, once):
    OK fuo 3.0

Request (client -> server):
    REQ 17 20
    status --format=json

Response (server -> client), correlated by token:
    ACK 17 OK 5
    hello

Event (server -> client), never carries a token:
    MSG player.seeked 6
    [42.5]

Event bodies are JSON arrays holding the notification arguments.
"""

import json
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from errors import ProtocolError

MAX_HEADER_LENGTH = 4096
MAX_BODY_LENGTH = 16 * 1024 * 1024
TERMINATOR = b"\r\n"


@dataclass(frozen=True)
class Greeting:
    text: str


@dataclass(frozen=True)
class Response:
    token: str
    ok: bool
    body: bytes

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """
        Decode the body as JSON.

        Raises:
            ProtocolError: If the body is not valid JSON
        """
        try:
            return json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ProtocolError(f"reply {self.token} is not JSON: {e}") from e


@dataclass(frozen=True)
class Event:
    topic: str
    body: bytes

    def args(self) -> List[Any]:
        """
        Decode the notification arguments.
        An empty body means no arguments; a non-array JSON value is wrapped.

        Raises:
            ProtocolError: If the body is not valid JSON
        """
        if not self.body.strip():
            return []
        try:
            value = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ProtocolError(f"event {self.topic} is not JSON: {e}") from e
        if isinstance(value, list):
            return value
        return [value]


Frame = Union[Greeting, Response, Event]


def encode_request(token: str, command: str) -> bytes:
    """
    Serialize a command for socket transmission.

    Args:
        token: Correlation token echoed back in the matching ACK
        command: Command text, e.g. "play fuo://local/songs/42"

    Returns:
        The complete framed request
    """
    if not token or any(c.isspace() for c in token):
        raise ValueError(f"invalid correlation token: {token!r}")
    body = command.encode("utf-8")
    header = f"REQ {token} {len(body)}\n".encode("ascii")
    return header + body + TERMINATOR


def encode_response(token: str, ok: bool, body: bytes = b"") -> bytes:
    """Serialize a response frame (used by test daemons and tooling)."""
    status = "OK" if ok else "ERR"
    return f"ACK {token} {status} {len(body)}\n".encode("ascii") + body + TERMINATOR


def encode_event(topic: str, args: Optional[List[Any]] = None) -> bytes:
    """Serialize an event frame (used by test daemons and tooling)."""
    body = json.dumps(args if args is not None else []).encode("utf-8")
    return f"MSG {topic} {len(body)}\n".encode("ascii") + body + TERMINATOR


class FrameDecoder:
    """
    Incremental decoder turning a byte stream into frames.

    Bytes may be fed in arbitrary chunks; a frame is only produced once its
    header, body and terminator are all buffered, so message boundaries never
    depend on packet boundaries.
    """

    def __init__(self, expect_greeting: bool = True):
        self._buf = bytearray()
        self._expect_greeting = expect_greeting
        # Header of a frame whose body is still incomplete
        self._pending_header: Optional[tuple] = None

    def feed(self, data: bytes) -> List[Frame]:
        """Buffer `data` and return every frame completed by it."""
        self._buf.extend(data)
        frames = []
        while True:
            frame = self._next_frame()
            if frame is None:
                break
            frames.append(frame)
        return frames

    @property
    def buffered(self) -> int:
        return len(self._buf)

    def _read_line(self) -> Optional[str]:
        idx = self._buf.find(b"\n")
        if idx < 0:
            if len(self._buf) > MAX_HEADER_LENGTH:
                raise ProtocolError("header line too long")
            return None
        if idx > MAX_HEADER_LENGTH:
            raise ProtocolError("header line too long")
        raw = bytes(self._buf[:idx])
        del self._buf[: idx + 1]
        try:
            return raw.decode("utf-8").rstrip("\r")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"header is not UTF-8: {e}") from e

    def _next_frame(self) -> Optional[Frame]:
        if self._expect_greeting:
            line = self._read_line()
            if line is None:
                return None
            if not line.upper().startswith("OK"):
                raise ProtocolError(f"unexpected greeting: {line!r}")
            self._expect_greeting = False
            return Greeting(line)

        while self._pending_header is None:
            line = self._read_line()
            if line is None:
                return None
            # Blank keep-alive lines between frames are skipped
            if line.strip():
                self._pending_header = _parse_header(line)

        length = self._pending_header[-1]
        if len(self._buf) < length + len(TERMINATOR):
            return None
        body = bytes(self._buf[:length])
        if self._buf[length:length + len(TERMINATOR)] != TERMINATOR:
            raise ProtocolError("frame body is not terminated by CRLF")
        del self._buf[: length + len(TERMINATOR)]

        header, self._pending_header = self._pending_header, None
        if header[0] == "ACK":
            _, token, ok, _ = header
            return Response(token=token, ok=ok, body=body)
        _, topic, _ = header
        return Event(topic=topic, body=body)


def _parse_header(line: str) -> tuple:
    words = line.split()
    kind = words[0].upper()
    if kind == "ACK":
        if len(words) != 4:
            raise ProtocolError(f"malformed response header: {line!r}")
        status = words[2].upper()
        if status not in ("OK", "ERR"):
            raise ProtocolError(f"unknown response status: {words[2]!r}")
        return ("ACK", words[1], status == "OK", _parse_length(words[3]))
    if kind == "MSG":
        if len(words) != 3:
            raise ProtocolError(f"malformed event header: {line!r}")
        return ("MSG", words[1], _parse_length(words[2]))
    raise ProtocolError(f"unknown frame kind: {words[0]!r}")


def _parse_length(word: str) -> int:
    try:
        length = int(word)
    except ValueError:
        raise ProtocolError(f"invalid body length: {word!r}") from None
    if length < 0 or length > MAX_BODY_LENGTH:
        raise ProtocolError(f"body length out of range: {length}")
    return length
