import logging
import socket
import socketserver
from typing import NamedTuple, Optional

from dnslib import OPCODE, RCODE, DNSHeader, DNSRecord

from ..errors import UpstreamExhausted
from ..forwarder import UpstreamForwarder
from ..models import Answered, Failed, Forwarded, Query, ResolutionOutcome
from ..router import QueryRouter
from .udp_server import DNSUDPHandler

logger = logging.getLogger("beacon.server")


class ResolveResult(NamedTuple):
    """Result of one pass through the resolution pipeline.

    Inputs:
      - None (constructed by Resolver.resolve_wire).
    Outputs:
      - wire: Final DNS response bytes (empty when the query must be dropped).
      - rcode_name: Textual rcode name for logging.
      - rule: Name of the routing rule that handled the query, if any.
      - upstream: Endpoint string used when the query was forwarded.
    """

    wire: bytes
    rcode_name: str
    rule: Optional[str] = None
    upstream: Optional[str] = None


def _error_reply(data: bytes, rcode: int) -> bytes:
    """Build a bare error reply from the 12-byte header of an unparseable query.

    Inputs:
      - data: Raw query bytes.
      - rcode: Response code to set.
    Outputs:
      - bytes: Reply with the query's ID, or b"" when no header is readable.
    """
    if len(data) < 12:
        return b""
    req_id = int.from_bytes(data[:2], "big")
    rd = (data[2] & 0x01) if len(data) > 2 else 0
    reply = DNSRecord(DNSHeader(id=req_id, qr=1, rd=rd, ra=1, rcode=rcode))
    return reply.pack()


class Resolver:
    """Decode, route, resolve and encode one DNS query.

    Inputs (constructor):
      - router: QueryRouter holding the ordered rules and handlers.
      - forwarder: UpstreamForwarder used for Forwarded outcomes.

    Outputs:
      - resolve_query_bytes(data, client_ip) -> response bytes; the instance
        is itself callable with the same signature so it can be handed to the
        UDP and TCP listeners as their resolver.

    Every query gets a definite response: handler outcomes map to NOERROR,
    NXDOMAIN, SERVFAIL or REFUSED, exhausted forwarding maps to SERVFAIL, and
    any unexpected exception is logged and answered with SERVFAIL.

    Example:
      >>> resolver = Resolver(router, forwarder)
      >>> resp = resolver.resolve_query_bytes(query_bytes, '127.0.0.1')
    """

    def __init__(self, router: QueryRouter, forwarder: UpstreamForwarder):
        self.router = router
        self.forwarder = forwarder

    def __call__(self, data: bytes, client_ip: str) -> bytes:
        return self.resolve_query_bytes(data, client_ip)

    def resolve_query_bytes(self, data: bytes, client_ip: str) -> bytes:
        """Resolve a single DNS wire query and return wire response.

        Inputs:
          - data: Wire-format DNS query bytes.
          - client_ip: Client IP string used for logging.
        Outputs:
          - bytes: Wire-format DNS response (b"" to drop garbage input).
        """
        return self.resolve_wire(data, client_ip).wire

    def resolve_wire(self, data: bytes, client_ip: str) -> ResolveResult:
        try:
            req = DNSRecord.parse(data)
        except Exception as e:
            logger.debug("Unparseable query from %s: %s", client_ip, e)
            return ResolveResult(_error_reply(data, RCODE.FORMERR), "FORMERR")

        if req.header.opcode != OPCODE.QUERY:
            reply = req.reply(ra=1, aa=0)
            reply.header.rcode = RCODE.NOTIMP
            return ResolveResult(reply.pack(), "NOTIMP")
        if not req.questions:
            reply = req.reply(ra=1, aa=0)
            reply.header.rcode = RCODE.FORMERR
            return ResolveResult(reply.pack(), "FORMERR")

        q = req.questions[0]
        query = Query.create(q.qname, q.qtype, context=req)

        try:
            match = self.router.route(query)
            outcome = match.rule.handler(query, match.key)
            result = self._encode(req, query, outcome, match.rule.name)
        except Exception:
            logger.exception(
                "Unhandled error resolving %s %s for %s",
                query.name,
                query.type_name,
                client_ip,
            )
            reply = req.reply(ra=1, aa=0)
            reply.header.rcode = RCODE.SERVFAIL
            result = ResolveResult(reply.pack(), "SERVFAIL")

        logger.debug(
            "%s %s %s -> %s (rule=%s, upstream=%s)",
            client_ip,
            query.name,
            query.type_name,
            result.rcode_name,
            result.rule,
            result.upstream,
        )
        return result

    def _encode(
        self, req: DNSRecord, query: Query, outcome: ResolutionOutcome, rule: str
    ) -> ResolveResult:
        if isinstance(outcome, Answered):
            reply = req.reply(ra=1, aa=1)
            for rr in outcome.records:
                reply.add_answer(rr)
            return ResolveResult(reply.pack(), "NOERROR", rule)

        if isinstance(outcome, Failed):
            # NXDOMAIN comes from the zone we are authoritative for.
            reply = req.reply(ra=1, aa=1 if outcome.rcode == RCODE.NXDOMAIN else 0)
            reply.header.rcode = outcome.rcode
            return ResolveResult(reply.pack(), outcome.rcode_name, rule)

        if isinstance(outcome, Forwarded):
            try:
                wire, endpoint = self.forwarder.forward(req, query.name, query.qtype)
            except UpstreamExhausted:
                reply = req.reply(ra=1, aa=0)
                reply.header.rcode = RCODE.SERVFAIL
                return ResolveResult(reply.pack(), "SERVFAIL", rule)
            try:
                rcode_name = RCODE.get(DNSRecord.parse(wire).header.rcode, "UNKNOWN")
            except Exception:  # pragma: no cover - forwarder already parsed it
                rcode_name = "UNKNOWN"
            return ResolveResult(wire, rcode_name, rule, str(endpoint))

        raise TypeError(f"unknown resolution outcome {outcome!r}")


class _DualStackUDPServer(socketserver.ThreadingUDPServer):
    """ThreadingUDPServer that serves IPv6 and, on '::', IPv4 as well."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, handler, resolver):
        host = server_address[0]
        if ":" in str(host):
            self.address_family = socket.AF_INET6
        self.resolver = resolver
        super().__init__(server_address, handler)

    def server_bind(self):
        if self.address_family == socket.AF_INET6 and hasattr(socket, "IPV6_V6ONLY"):
            try:
                self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            except OSError:  # pragma: no cover - platform specific
                logger.debug("Could not enable dual-stack UDP socket", exc_info=True)
        super().server_bind()


class DNSServer:
    """A UDP DNS server wrapper.

    Example use:
        >>> from beacon.servers.server import DNSServer
        >>> import threading
        >>> server = DNSServer("127.0.0.1", 5355, resolver)
        >>> server_thread = threading.Thread(target=server.serve_forever, daemon=True)
        >>> server_thread.start()
        >>> server.stop()
    """

    def __init__(self, host: str, port: int, resolver) -> None:
        """Initialize a UDP DNSServer.

        Inputs:
            host: The host to listen on ('::' serves both address families).
            port: The port to listen on (0 picks a free port).
            resolver: Callable (query_bytes, client_ip) -> response_bytes.
        """
        try:
            self.server = _DualStackUDPServer((host, port), DNSUDPHandler, resolver)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise
        logger.debug("DNS UDP server bound to %s:%d", host, self.port)

    @property
    def port(self) -> int:
        return int(self.server.server_address[1])

    def serve_forever(self) -> None:
        """Start the UDP server loop and listen for requests.

        Inputs:
          - None
        Outputs:
          - None; runs until shutdown is requested or KeyboardInterrupt occurs.
        """
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:  # pragma: no cover - interactive only
            pass

    def stop(self) -> None:
        """Request graceful shutdown and close the underlying UDP socket.

        Inputs:
          - None
        Outputs:
          - None; best-effort shutdown suitable for use from signal handlers.
        """
        try:
            # First ask the ThreadingUDPServer loop to stop accepting requests.
            self.server.shutdown()
        except Exception:  # pragma: no cover - log-only path
            logger.exception("Error while shutting down UDP server")
        try:
            # Then close the socket so resources are released promptly.
            self.server.server_close()
        except Exception:  # pragma: no cover - log-only path
            logger.exception("Error while closing UDP server socket")

