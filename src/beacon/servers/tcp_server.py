import asyncio
import logging
import socket
import socketserver
from typing import Callable

logger = logging.getLogger("beacon.server")


async def _read_exact(reader: asyncio.StreamReader, n: int) -> bytes:
    """
    Read exactly n bytes from an asyncio StreamReader.

    Inputs:
      - reader: asyncio.StreamReader
      - n: Number of bytes to read
    Outputs:
      - bytes: Exactly n bytes unless EOF occurs early.

    Example:
      >>> await _read_exact(reader, 2)
    """
    data = b""
    while len(data) < n:
        chunk = await reader.read(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


async def _handle_conn(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    resolver: Callable[[bytes, str], bytes],
    idle_timeout: float = 15.0,
) -> None:
    """
    Handle a single DNS-over-TCP connection (RFC 7766 framing).

    Inputs:
      - reader: StreamReader
      - writer: StreamWriter
      - resolver: Callable that takes (query_bytes, client_ip) and returns response_bytes
      - idle_timeout: Seconds before closing idle connection
    Outputs:
      - None

    The blocking resolver runs in the loop's default executor so slow store
    lookups or upstream forwarding never stall other connections.
    """
    peer = writer.get_extra_info("peername")
    client_ip = peer[0] if isinstance(peer, tuple) else "0.0.0.0"
    try:
        while True:
            hdr = await asyncio.wait_for(_read_exact(reader, 2), timeout=idle_timeout)
            if len(hdr) != 2:
                break
            ln = int.from_bytes(hdr, byteorder="big")
            if ln <= 0:
                break
            query = await asyncio.wait_for(
                _read_exact(reader, ln), timeout=idle_timeout
            )
            if len(query) != ln:
                break
            response = await asyncio.get_running_loop().run_in_executor(
                None, resolver, query, client_ip
            )
            # An empty response means the query was not worth answering.
            if not response:
                break
            writer.write(len(response).to_bytes(2, "big") + response)
            await writer.drain()
    except asyncio.TimeoutError:
        logger.debug("Closing idle TCP connection from %s", client_ip)
    except (ConnectionError, OSError) as e:
        logger.debug("TCP connection from %s failed: %s", client_ip, e)
    finally:
        try:
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError):  # pragma: no cover - peer already gone
            pass


async def serve_tcp(
    host: str,
    port: int,
    resolver: Callable[[bytes, str], bytes],
    *,
    idle_timeout: float = 15.0,
) -> None:
    """
    Serve DNS over TCP on host:port.

    Inputs:
      - host: Listen address ('::' also accepts IPv4 clients where the OS allows)
      - port: Listen port
      - resolver: Callable mapping (query_bytes, client_ip) -> response_bytes
      - idle_timeout: Seconds an idle connection is kept open
    Outputs:
      - None (runs forever)

    Example:
      >>> asyncio.run(serve_tcp('0.0.0.0', 5353, resolver))
    """
    server = await asyncio.start_server(
        lambda r, w: _handle_conn(r, w, resolver, idle_timeout), host, port
    )
    async with server:
        await server.serve_forever()


class _TCPHandler(socketserver.BaseRequestHandler):
    def handle(self):
        sock: socket.socket = self.request
        client_ip = self.client_address[0]
        sock.settimeout(self.server.idle_timeout)
        try:
            while True:
                hdr = _recv_exact(sock, 2)
                if len(hdr) != 2:
                    return
                ln = int.from_bytes(hdr, "big")
                if ln <= 0:
                    return
                query = _recv_exact(sock, ln)
                if len(query) != ln:
                    return
                response = self.server.resolver(query, client_ip)
                if not response:
                    return
                sock.sendall(len(response).to_bytes(2, "big") + response)
        except OSError as e:
            logger.debug("TCP connection from %s closed: %s", client_ip, e)


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, handler, resolver, idle_timeout):
        if ":" in str(server_address[0]):
            self.address_family = socket.AF_INET6
        self.resolver = resolver
        self.idle_timeout = idle_timeout
        super().__init__(server_address, handler)


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    remaining = n
    chunks = []
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def serve_tcp_threaded(
    host: str,
    port: int,
    resolver: Callable[[bytes, str], bytes],
    *,
    idle_timeout: float = 15.0,
) -> None:
    """
    Thread-per-connection TCP listener for environments where asyncio loops
    cannot be created.

    Inputs:
      - host, port, resolver, idle_timeout: as for serve_tcp
    Outputs:
      - None (runs forever)
    """
    server = _ThreadingTCPServer((host, port), _TCPHandler, resolver, idle_timeout)
    try:
        server.serve_forever()
    finally:
        server.server_close()
