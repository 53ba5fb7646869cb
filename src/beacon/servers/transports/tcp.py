import collections
import socket
import threading
import time
from typing import Deque, Dict, Optional, Tuple


class TCPError(Exception):
    """
    Brief: DNS-over-TCP transport error (connect, read/write or framing).

    Inputs:
      - message: description

    Outputs:
      - Exception instance
    """

    pass


def _open(host: str, port: int, connect_timeout_ms: int) -> socket.socket:
    sock = socket.create_connection((host, int(port)), timeout=connect_timeout_ms / 1000.0)
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    return sock


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    """Brief: Read n bytes, returning fewer only when the peer closes."""
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _exchange(sock: socket.socket, query: bytes, read_timeout_ms: int) -> bytes:
    """
    Brief: Write one length-prefixed query and read one length-prefixed reply.

    Inputs:
      - sock: connected stream socket
      - query: wire-format DNS message
      - read_timeout_ms: socket timeout applied to each send/recv

    Outputs:
      - bytes: reply body without its 2-byte length prefix

    Raises:
      - TCPError: when the peer closes before a full reply arrives.
    """
    sock.settimeout(read_timeout_ms / 1000.0)
    sock.sendall(len(query).to_bytes(2, "big") + query)
    prefix = _recv_exact(sock, 2)
    if len(prefix) < 2:
        raise TCPError("connection closed before length prefix")
    size = int.from_bytes(prefix, "big")
    body = _recv_exact(sock, size)
    if len(body) < size:
        raise TCPError(f"connection closed after {len(body)} of {size} bytes")
    return body


class _PooledSocket:
    __slots__ = ("sock", "released_at")

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self.released_at = time.monotonic()

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError:  # pragma: no cover
            pass


class TCPConnectionPool:
    """
    Brief: Keeps idle TCP connections to one upstream for reuse.

    Inputs:
      - host, port: upstream address
      - max_connections: cap on idle connections held
      - idle_timeout_s: idle connections older than this are discarded

    Outputs:
      - send(query, connect_timeout_ms, read_timeout_ms) -> reply bytes

    Connections are handed out most-recently-used first so the oldest ones
    age out.
    """

    def __init__(
        self, host: str, port: int, max_connections: int = 32, idle_timeout_s: int = 30
    ):
        self.host = host
        self.port = int(port)
        self.max_connections = max(1, int(max_connections))
        self.idle_timeout_s = max(1, int(idle_timeout_s))
        self._lock = threading.Lock()
        self._idle: Deque[_PooledSocket] = collections.deque()

    def _take(self) -> Optional[_PooledSocket]:
        cutoff = time.monotonic() - self.idle_timeout_s
        expired = []
        with self._lock:
            while self._idle and self._idle[0].released_at < cutoff:
                expired.append(self._idle.popleft())
            found = self._idle.pop() if self._idle else None
        for entry in expired:
            entry.close()
        return found

    def _give(self, entry: _PooledSocket) -> None:
        entry.released_at = time.monotonic()
        with self._lock:
            if len(self._idle) < self.max_connections:
                self._idle.append(entry)
                return
        entry.close()

    def send(self, query: bytes, connect_timeout_ms: int, read_timeout_ms: int) -> bytes:
        """
        Brief: Exchange one query, preferring an idle pooled connection.

        Inputs:
          - query: wire-format DNS message
          - connect_timeout_ms: timeout for opening a new connection
          - read_timeout_ms: timeout for each read/write

        Outputs:
          - bytes: reply body

        A reused connection the server has since closed fails once and is
        replaced by a fresh one; a fresh connection's failure is raised.
        """
        entry = self._take()
        if entry is not None:
            try:
                reply = _exchange(entry.sock, query, read_timeout_ms)
            except (OSError, TCPError):
                entry.close()
            else:
                self._give(entry)
                return reply

        try:
            entry = _PooledSocket(_open(self.host, self.port, connect_timeout_ms))
        except OSError as e:
            raise TCPError(f"connect to {self.host}:{self.port} failed: {e}") from e
        try:
            reply = _exchange(entry.sock, query, read_timeout_ms)
        except OSError as e:
            entry.close()
            raise TCPError(f"exchange with {self.host}:{self.port} failed: {e}") from e
        except TCPError:
            entry.close()
            raise
        self._give(entry)
        return reply

    def close(self) -> None:
        with self._lock:
            idle = list(self._idle)
            self._idle.clear()
        for entry in idle:
            entry.close()


_POOLS: Dict[Tuple[str, int], TCPConnectionPool] = {}
_POOLS_LOCK = threading.Lock()


def get_tcp_pool(host: str, port: int) -> TCPConnectionPool:
    """Brief: Return the process-wide pool for (host, port), creating it once."""
    key = (host, int(port))
    with _POOLS_LOCK:
        if key not in _POOLS:
            _POOLS[key] = TCPConnectionPool(host, int(port))
        return _POOLS[key]


def tcp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    connect_timeout_ms: int = 1000,
    read_timeout_ms: int = 1500,
) -> bytes:
    """
    Brief: One-shot DNS-over-TCP exchange on a dedicated connection (RFC 7766 framing).

    Inputs:
      - host, port: upstream address
      - query: wire-format DNS message
      - connect_timeout_ms: connect timeout
      - read_timeout_ms: per-operation read/write timeout

    Outputs:
      - bytes: reply body

    Raises:
      - TCPError: on any network or framing failure.
    """
    try:
        with _open(host, port, connect_timeout_ms) as sock:
            return _exchange(sock, query, read_timeout_ms)
    except OSError as e:
        raise TCPError(f"TCP query to {host}:{port} failed: {e}") from e
