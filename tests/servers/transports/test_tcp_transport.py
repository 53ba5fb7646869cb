"""
Brief: Tests for beacon.servers.transports.tcp pooled and one-shot queries.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading

import pytest

from beacon.servers.transports.tcp import (
    TCPConnectionPool,
    TCPError,
    get_tcp_pool,
    tcp_query,
)

pytestmark = pytest.mark.slow


def _recv_exact(conn, n):
    data = b""
    while len(data) < n:
        chunk = conn.recv(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


class _TCPResponder:
    """Brief: Loopback DNS-over-TCP responder echoing 'R' + query.

    Inputs:
      - queries_per_conn: close each connection after this many queries.

    Outputs:
      - .port, .accepted (number of accepted connections)
    """

    def __init__(self, queries_per_conn=100):
        self.sock = socket.socket()
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(8)
        self.port = self.sock.getsockname()[1]
        self.accepted = 0
        self.queries_per_conn = queries_per_conn
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        while True:
            try:
                conn, _ = self.sock.accept()
            except OSError:
                return
            self.accepted += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn):
        with conn:
            for _ in range(self.queries_per_conn):
                hdr = _recv_exact(conn, 2)
                if len(hdr) != 2:
                    return
                body = _recv_exact(conn, int.from_bytes(hdr, "big"))
                resp = b"R" + body
                conn.sendall(len(resp).to_bytes(2, "big") + resp)

    def close(self):
        self.sock.close()


@pytest.fixture
def responder():
    r = _TCPResponder()
    yield r
    r.close()


def test_tcp_query_one_shot(responder):
    """Brief: tcp_query frames the query and returns the unframed reply."""
    assert tcp_query("127.0.0.1", responder.port, b"abc") == b"Rabc"


def test_tcp_query_connect_failure():
    """Brief: Refused connections raise TCPError."""
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    with pytest.raises(TCPError):
        tcp_query("127.0.0.1", port, b"abc", connect_timeout_ms=200)


def test_pool_reuses_connection(responder):
    """Brief: Sequential sends share one pooled connection."""
    pool = TCPConnectionPool("127.0.0.1", responder.port)
    try:
        assert pool.send(b"one", 1000, 1000) == b"Rone"
        assert pool.send(b"two", 1000, 1000) == b"Rtwo"
        assert responder.accepted == 1
    finally:
        pool.close()


def test_pool_retries_stale_connection():
    """Brief: A connection closed by the server is replaced transparently."""
    responder = _TCPResponder(queries_per_conn=1)
    pool = TCPConnectionPool("127.0.0.1", responder.port)
    try:
        assert pool.send(b"one", 1000, 1000) == b"Rone"
        assert pool.send(b"two", 1000, 1000) == b"Rtwo"
        assert responder.accepted == 2
    finally:
        pool.close()
        responder.close()


def test_get_tcp_pool_is_shared():
    """Brief: One pool exists per (host, port)."""
    assert get_tcp_pool("127.0.0.1", 5301) is get_tcp_pool("127.0.0.1", 5301)
    assert get_tcp_pool("127.0.0.1", 5301) is not get_tcp_pool("127.0.0.1", 5302)
