import logging
import socketserver

from dnslib import QTYPE, DNSHeader, DNSRecord

logger = logging.getLogger("beacon.server")

# Classic DNS UDP limit when the client does not advertise EDNS(0).
DEFAULT_UDP_PAYLOAD = 512


def edns_payload_size(req: DNSRecord, default: int = DEFAULT_UDP_PAYLOAD) -> int:
    """Return the client's advertised EDNS(0) UDP payload size.

    Inputs:
      - req: Parsed client query.
      - default: Size to use when no OPT record is present.
    Outputs:
      - int: payload size, never below 512.
    """
    for rr in getattr(req, "ar", None) or []:
        if getattr(rr, "rtype", None) == QTYPE.OPT:
            return max(DEFAULT_UDP_PAYLOAD, min(int(rr.rclass), 65535))
    return default


def truncate_for_udp(query: bytes, response: bytes) -> bytes:
    """Fit a response into the client's UDP payload limit.

    Inputs:
      - query: Raw client query (used to read its EDNS payload size).
      - response: Full wire response.
    Outputs:
      - bytes: response unchanged when it fits, otherwise a copy that keeps
        header and question, drops all records and sets TC=1 so the client
        retries over TCP.
    """
    try:
        limit = edns_payload_size(DNSRecord.parse(query))
    except Exception:
        limit = DEFAULT_UDP_PAYLOAD
    if len(response) <= limit:
        return response
    try:
        parsed = DNSRecord.parse(response)
    except Exception:  # pragma: no cover - response came from our own pipeline
        return response[:limit]
    trunc = DNSRecord(
        DNSHeader(id=parsed.header.id, bitmap=parsed.header.bitmap),
        questions=parsed.questions,
    )
    trunc.header.tc = 1
    return trunc.pack()


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles UDP DNS requests.
    This class is instantiated for each incoming DNS query, each on its own
    thread. The resolver callable lives on the server instance.

    Example use:
        This handler is used internally by the DNSServer and is not
        typically instantiated directly by users.
    """

    def handle(self):
        data, sock = self.request
        client_ip = self.client_address[0]
        resolver = getattr(self.server, "resolver", None)
        if resolver is None:  # pragma: no cover - misconfigured server
            logger.error("UDP server has no resolver; dropping query")
            return
        try:
            response = resolver(data, client_ip)
        except Exception:  # pragma: no cover - resolver maps its own errors
            logger.exception("Resolver failed for UDP query from %s", client_ip)
            return
        if not response:
            return
        try:
            sock.sendto(truncate_for_udp(data, response), self.client_address)
        except OSError as e:
            logger.debug("Failed to send UDP response to %s: %s", client_ip, e)
