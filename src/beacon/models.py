"""Value types that flow through the resolution pipeline.

Brief:
  Queries, store records, upstream endpoints and resolution outcomes are
  immutable snapshots. They are created per request (Query, outcomes) or once
  at startup (UpstreamEndpoint) and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from dnslib import QTYPE, RCODE, RR


def normalize_name(name: Any) -> str:
    """Brief: Canonicalize a DNS name for matching.

    Inputs:
      - name: str or dnslib.DNSLabel.

    Outputs:
      - str: lowercase name without the trailing root dot.

    Example:
      >>> normalize_name("Host.Internal.Example.")
      'host.internal.example'
    """

    return str(name).rstrip(".").lower()


@dataclass(frozen=True)
class Query:
    """A single question received from a client.

    Inputs:
      - name: Query name (normalized with normalize_name by the caller).
      - qtype: Numeric DNS type (dnslib QTYPE value).
      - context: Optional opaque transport handle, usually the parsed request.

    Outputs:
      - Immutable query value.
    """

    name: str
    qtype: int
    context: Any = None

    @classmethod
    def create(cls, name: Any, qtype: int, context: Any = None) -> "Query":
        return cls(normalize_name(name), int(qtype), context)

    @property
    def type_name(self) -> str:
        return QTYPE.get(self.qtype, str(self.qtype))


@dataclass(frozen=True)
class Record:
    """A row from the backing record store.

    Inputs:
      - name: Bare label the row is keyed on (no zone suffix).
      - type: A, AAAA, CNAME or MX; PTR answers come from the address columns.
      - ipv4_address: Address for A rows.
      - ipv6_address: Address for AAAA rows.
      - cname: Target for CNAME rows, exchange host for MX rows.
      - priority: MX preference.

    Outputs:
      - Immutable record snapshot.
    """

    name: str
    type: str
    ipv4_address: Optional[str] = None
    ipv6_address: Optional[str] = None
    cname: Optional[str] = None
    priority: Optional[int] = None


@dataclass(frozen=True)
class UpstreamEndpoint:
    """One upstream resolver address and the transport used to reach it.

    Inputs:
      - transport: 'udp' or 'tcp'.
      - host: IP address or hostname.
      - port: Port number.

    Outputs:
      - Immutable endpoint; list order defines failover priority.
    """

    transport: str
    host: str
    port: int = 53

    def __str__(self) -> str:
        return f"{self.transport}:{self.host}:{self.port}"


@dataclass(frozen=True)
class Answered:
    """Local answer: zero or more resource records sharing one TTL."""

    records: Tuple[RR, ...]
    ttl: int


@dataclass(frozen=True)
class Failed:
    """Local failure carrying a DNS response code (NXDOMAIN, SERVFAIL, REFUSED)."""

    rcode: int

    @property
    def rcode_name(self) -> str:
        return RCODE.get(self.rcode, str(self.rcode))


@dataclass(frozen=True)
class Forwarded:
    """Delegation signal: the query must be answered by an upstream."""

    reason: str = ""


ResolutionOutcome = Union[Answered, Failed, Forwarded]
