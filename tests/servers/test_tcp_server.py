"""
Brief: Unit tests for the downstream TCP listeners.

Inputs:
  - None

Outputs:
  - None
"""

import asyncio
import socket
import threading
import time

import pytest

import beacon.servers.tcp_server as tcp_server_mod
from beacon.servers.tcp_server import _ThreadingTCPServer, _TCPHandler


class _Writer:
    """Brief: Minimal asyncio StreamWriter stand-in recording writes."""

    def __init__(self):
        self.written = []
        self.closed = False

    def get_extra_info(self, key: str):
        return ("9.9.9.9", 1234) if key == "peername" else None

    def write(self, data: bytes) -> None:
        self.written.append(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


def _reader_with(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


def test_handle_conn_answers_framed_queries():
    """Brief: Each length-prefixed query gets a length-prefixed response."""
    seen = []

    def resolver(q: bytes, ip: str) -> bytes:
        seen.append((q, ip))
        return b"R" + q

    async def run():
        reader = _reader_with(b"\x00\x02ab\x00\x03cde")
        writer = _Writer()
        await tcp_server_mod._handle_conn(reader, writer, resolver, idle_timeout=1.0)
        return writer

    writer = asyncio.run(run())
    assert writer.written == [b"\x00\x03Rab", b"\x00\x04Rcde"]
    assert seen == [(b"ab", "9.9.9.9"), (b"cde", "9.9.9.9")]
    assert writer.closed is True


def test_handle_conn_breaks_on_short_body():
    """Brief: A body shorter than its length prefix closes the connection."""

    async def run():
        writer = _Writer()
        await tcp_server_mod._handle_conn(
            _reader_with(b"\x00\x04xx"), writer, lambda q, ip: q, idle_timeout=1.0
        )
        return writer

    writer = asyncio.run(run())
    assert writer.written == []
    assert writer.closed is True


def test_handle_conn_stops_on_empty_response():
    """Brief: An empty resolver response closes the connection."""

    async def run():
        writer = _Writer()
        await tcp_server_mod._handle_conn(
            _reader_with(b"\x00\x01z"), writer, lambda q, ip: b"", idle_timeout=1.0
        )
        return writer

    assert asyncio.run(run()).written == []


def _frame_query(port: int, payload: bytes) -> bytes:
    with socket.create_connection(("127.0.0.1", port), timeout=2.0) as s:
        s.sendall(len(payload).to_bytes(2, "big") + payload)
        hdr = s.recv(2)
        ln = int.from_bytes(hdr, "big")
        body = b""
        while len(body) < ln:
            chunk = s.recv(ln - len(body))
            if not chunk:
                break
            body += chunk
        return body


@pytest.mark.slow
def test_threaded_tcp_server_round_trip():
    """Brief: The thread-per-connection listener echoes through the resolver."""
    server = _ThreadingTCPServer(
        ("127.0.0.1", 0), _TCPHandler, lambda q, ip: q[::-1], 2.0
    )
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    try:
        assert _frame_query(server.server_address[1], b"abc") == b"cba"
    finally:
        server.shutdown()
        server.server_close()
        t.join(timeout=2.0)


@pytest.mark.slow
def test_serve_tcp_round_trip():
    """Brief: serve_tcp answers a framed query on a real socket."""
    with socket.socket() as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]

    loop = asyncio.new_event_loop()

    def runner():
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(
                tcp_server_mod.serve_tcp("127.0.0.1", port, lambda q, ip: b"ok:" + q)
            )
        except asyncio.CancelledError:
            pass

    t = threading.Thread(target=runner, daemon=True)
    t.start()
    try:
        deadline = time.time() + 3.0
        while True:
            try:
                assert _frame_query(port, b"ping") == b"ok:ping"
                break
            except ConnectionRefusedError:
                if time.time() > deadline:
                    raise
                time.sleep(0.05)
    finally:
        loop.call_soon_threadsafe(
            lambda: [task.cancel() for task in asyncio.all_tasks(loop)]
        )
        t.join(timeout=2.0)
