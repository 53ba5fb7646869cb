import socket
import time
from typing import Any, Optional, Tuple


class UDPError(Exception):
    """
    Brief: DNS-over-UDP transport error (timeout, unreachable host, bad address).

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


def _resolve_upstream(host: str, port: int) -> Tuple[int, Any]:
    """Brief: Resolve an upstream into (address family, sockaddr).

    Inputs:
    - host: IPv4/IPv6 literal or hostname
    - port: port number

    Outputs:
    - (family, sockaddr) for the first usable address
    """
    try:
        infos = socket.getaddrinfo(host, int(port), 0, socket.SOCK_DGRAM)
    except socket.gaierror as e:
        raise UDPError(f"UDP error: cannot resolve {host}: {e}")
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


def udp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    timeout_ms: int = 2000,
    source_ip: Optional[str] = None,
) -> bytes:
    """
    Brief: Send one DNS query over UDP and wait for its reply.

    Inputs:
    - host: upstream resolver host/IP (IPv4 or IPv6)
    - port: upstream UDP port
    - query: wire-format DNS query bytes
    - timeout_ms: total time to wait for a matching reply
    - source_ip: optional source address to bind

    Outputs:
    - bytes: the first datagram whose DNS ID matches the query's. Datagrams
      with another ID are discarded without extending the timeout.
    """
    family, sockaddr = _resolve_upstream(host, port)
    deadline = time.monotonic() + timeout_ms / 1000.0
    query_id = bytes(query[:2])
    try:
        with socket.socket(family, socket.SOCK_DGRAM) as s:
            if source_ip:
                s.bind((source_ip, 0))
            s.sendto(query, sockaddr)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise UDPError(f"UDP error: no reply from {host}:{port}")
                s.settimeout(remaining)
                data, _ = s.recvfrom(65535)
                if len(query_id) < 2 or data[:2] == query_id:
                    return data
    except OSError as e:
        raise UDPError(f"UDP error: {e}")
