import socket

import pytest

from errors import ConnectError, ConnectionLost
from protocol import Greeting, Response, encode_response
from transport import Connection, Endpoint, connect, parse_endpoint


class TestParseEndpoint:
    """Tests for daemon address parsing."""

    def test_host_port(self):
        assert parse_endpoint("127.0.0.1:23333") == Endpoint(host="127.0.0.1", port=23333)

    def test_ipv6(self):
        endpoint = parse_endpoint("[::1]:23333")
        assert endpoint == Endpoint(host="::1", port=23333)
        assert str(endpoint) == "[::1]:23333"

    def test_unix(self):
        assert parse_endpoint("unix:/tmp/fuo.sock").path == "/tmp/fuo.sock"
        assert parse_endpoint("/tmp/fuo.sock").is_unix
        assert str(parse_endpoint("/tmp/fuo.sock")) == "unix:/tmp/fuo.sock"

    @pytest.mark.parametrize("text", ["", "localhost", ":80", "host:port", "host:0", "host:70000", "unix:", "[::1]"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_endpoint(text)


class TestConnection:
    """Tests for the socket wrapper, using a local socket pair as the daemon."""

    def setup_method(self):
        self.server, client = socket.socketpair()
        self.conn = Connection(client, Endpoint(path="/test"))

    def teardown_method(self):
        self.conn.close()
        self.server.close()

    def test_receive_one_frame_at_a_time(self):
        self.server.sendall(b"OK fuo 3.0\n" + encode_response("1", True, b"x"))
        assert self.conn.receive(timeout=1) == Greeting("OK fuo 3.0")
        # The response arrived in the same read and is kept for later
        assert self.conn.take_ready() == [Response("1", True, b"x")]

    def test_read_frames_returns_leftovers_first(self):
        self.server.sendall(b"OK fuo 3.0\n" + encode_response("1", True))
        self.conn.receive(timeout=1)
        self.server.sendall(encode_response("2", True))
        frames = self.conn.read_frames()
        assert [f.token for f in frames][:1] == ["1"]

    def test_send(self):
        self.conn.send(b"REQ 1 6\nstatus\r\n")
        assert self.server.recv(100) == b"REQ 1 6\nstatus\r\n"

    def test_peer_close_is_connection_lost(self):
        self.server.close()
        with pytest.raises(ConnectionLost):
            self.conn.receive(timeout=1)

    def test_receive_timeout(self):
        with pytest.raises(ConnectionLost):
            self.conn.receive(timeout=0.05)

    def test_close_is_idempotent(self):
        self.conn.close()
        self.conn.close()
        assert self.conn.closed
        with pytest.raises(ConnectionLost):
            self.conn.send(b"x")


class TestConnect:
    """Tests for opening connections."""

    def test_refused(self):
        listener = socket.socket()
        listener.bind(("127.0.0.1", 0))
        port = listener.getsockname()[1]
        listener.close()
        with pytest.raises(ConnectError):
            connect(f"127.0.0.1:{port}", timeout=1)

    def test_invalid_address(self):
        with pytest.raises(ConnectError):
            connect("nonsense", timeout=1)

    def test_connects_to_daemon(self, daemon):
        with connect(daemon.endpoint, timeout=1) as conn:
            assert isinstance(conn.receive(timeout=1), Greeting)
        assert conn.closed
