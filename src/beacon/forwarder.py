"""Upstream forwarding with ordered failover.

Brief:
  UpstreamForwarder walks its endpoint list in order for every forwarded
  query. A transport error, timeout, unparseable reply or SERVFAIL moves on to
  the next endpoint; only when the list is exhausted does forwarding fail with
  UpstreamExhausted. Nothing is cached or remembered between queries.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from dnslib import QTYPE, RCODE, DNSRecord

from .errors import UpstreamExhausted
from .models import UpstreamEndpoint
from .servers.transports.tcp import TCPError, get_tcp_pool, tcp_query
from .servers.transports.udp import UDPError, udp_query

logger = logging.getLogger(__name__)


def set_response_id(wire: bytes, req_id: int) -> bytes:
    """Ensure the response DNS ID matches the request ID.

    Inputs:
      - wire: DNS response bytes.
      - req_id: int request ID to set in the first two bytes.

    Outputs:
      - bytes: response with corrected ID.

    The DNS ID is the first 2 bytes (big-endian); rewriting them avoids a
    parse/pack round trip that could alter the upstream's encoding.
    """
    bwire = bytes(wire)
    if len(bwire) < 2:
        return bwire
    return int(req_id & 0xFFFF).to_bytes(2, "big") + bwire[2:]


class UpstreamForwarder:
    """
    Sends queries to upstream resolvers, failing over in list order.

    Inputs:
      - endpoints: Ordered UpstreamEndpoint values. Conventionally UDP before
        TCP for a host, and the primary host before the secondary.
      - timeout_ms: Per-attempt timeout in milliseconds.
      - pool_tcp: Reuse pooled TCP connections (default True).

    Outputs:
      - forward(query) -> (response_wire, endpoint)

    Example:
      >>> fwd = UpstreamForwarder([UpstreamEndpoint("udp", "192.0.2.1", 53)])
      >>> [str(e) for e in fwd.endpoints]
      ['udp:192.0.2.1:53']
    """

    def __init__(
        self,
        endpoints: Iterable[UpstreamEndpoint],
        timeout_ms: int = 2000,
        pool_tcp: bool = True,
    ):
        self._endpoints: Tuple[UpstreamEndpoint, ...] = tuple(endpoints)
        self.timeout_ms = max(1, int(timeout_ms))
        self.pool_tcp = bool(pool_tcp)

    @property
    def endpoints(self) -> Sequence[UpstreamEndpoint]:
        return self._endpoints

    def _send(self, endpoint: UpstreamEndpoint, wire: bytes) -> bytes:
        transport = endpoint.transport.lower()
        if transport == "tcp":
            if self.pool_tcp:
                pool = get_tcp_pool(endpoint.host, endpoint.port)
                return pool.send(wire, self.timeout_ms, self.timeout_ms)
            return tcp_query(
                endpoint.host,
                endpoint.port,
                wire,
                connect_timeout_ms=self.timeout_ms,
                read_timeout_ms=self.timeout_ms,
            )
        if transport == "udp":
            return udp_query(
                endpoint.host, endpoint.port, wire, timeout_ms=self.timeout_ms
            )
        raise ValueError(f"unsupported upstream transport {endpoint.transport!r}")

    def _exchange(
        self, endpoint: UpstreamEndpoint, wire: bytes, qname: str
    ) -> Tuple[Optional[bytes], Optional[DNSRecord], Optional[Exception]]:
        """Send to one endpoint; return (reply, parsed, None) or (None, None, error).

        Transport errors, unparseable replies and SERVFAIL all count as failures.
        """

        try:
            response_wire = self._send(endpoint, wire)
        except (UDPError, TCPError, OSError, ValueError) as e:
            logger.debug("Upstream %s failed for %s: %s", endpoint, qname, e)
            return None, None, e

        try:
            parsed = DNSRecord.parse(response_wire)
        except Exception as e:
            logger.warning(
                "Failed to parse response from %s for %s: %s", endpoint, qname, e
            )
            return None, None, e

        if parsed.header.rcode == RCODE.SERVFAIL:
            logger.warning(
                "Upstream %s returned SERVFAIL for %s, trying next", endpoint, qname
            )
            return None, None, UpstreamExhausted(f"SERVFAIL from {endpoint}")

        return response_wire, parsed, None

    def _try_single(
        self, endpoint: UpstreamEndpoint, wire: bytes, qname: str
    ) -> Tuple[Optional[bytes], Optional[UpstreamEndpoint], Optional[Exception]]:
        """Query one endpoint, following a truncated UDP reply over TCP.

        Outputs:
          - (response_wire, used_endpoint, error): response_wire is None when
            this endpoint failed and error describes why.
        """

        response_wire, parsed, err = self._exchange(endpoint, wire, qname)
        if response_wire is None:
            return None, None, err

        # Truncated UDP reply: fetch the full answer from the same host over TCP.
        if endpoint.transport.lower() == "udp" and parsed.header.tc:
            logger.debug("Truncated UDP response for %s; retrying over TCP", qname)
            tcp_endpoint = UpstreamEndpoint("tcp", endpoint.host, endpoint.port)
            response_wire, _, err = self._exchange(tcp_endpoint, wire, qname)
            if response_wire is None:
                return None, None, err
            return response_wire, tcp_endpoint, None

        return response_wire, endpoint, None

    def forward(
        self, query: DNSRecord, qname: str = "", qtype: int = 0
    ) -> Tuple[bytes, UpstreamEndpoint]:
        """
        Brief: Forward a query, trying each endpoint in order.

        Inputs:
          - query: Parsed client query (its ID is preserved in the reply).
          - qname, qtype: Used for logging only.

        Outputs:
          - (response_wire, endpoint): first acceptable upstream reply, with
            its DNS ID rewritten to the client's.

        Raises:
          - UpstreamExhausted: every endpoint failed, or none are configured.
        """

        if not self._endpoints:
            raise UpstreamExhausted("no upstream endpoints configured")

        wire = query.pack()
        last_error: Optional[Exception] = None
        for endpoint in self._endpoints:
            logger.debug(
                "Forwarding %s type %s via %s",
                qname,
                QTYPE.get(qtype, qtype),
                endpoint,
            )
            resp, used, err = self._try_single(endpoint, wire, qname)
            if resp is not None and used is not None:
                return set_response_id(resp, query.header.id), used
            last_error = err

        logger.warning(
            "All upstreams failed for %s %s. Last error: %s",
            qname,
            QTYPE.get(qtype, qtype),
            last_error,
        )
        raise UpstreamExhausted(
            f"all {len(self._endpoints)} upstream endpoints failed", last_error
        )


def expand_upstreams(
    hosts: Sequence[Tuple[str, int]], transports: Sequence[str] = ("udp", "tcp")
) -> List[UpstreamEndpoint]:
    """Brief: Expand upstream hosts into the ordered endpoint list.

    Inputs:
      - hosts: (host, port) pairs, primary first.
      - transports: Transports to try per host, in order.

    Outputs:
      - list[UpstreamEndpoint]: every transport of the first host, then every
        transport of the next host, and so on.

    Example:
      >>> [str(e) for e in expand_upstreams([("10.0.0.1", 53), ("10.0.0.2", 53)])]
      ['udp:10.0.0.1:53', 'tcp:10.0.0.1:53', 'udp:10.0.0.2:53', 'tcp:10.0.0.2:53']
    """

    return [
        UpstreamEndpoint(t, str(host), int(port))
        for host, port in hosts
        for t in transports
    ]
