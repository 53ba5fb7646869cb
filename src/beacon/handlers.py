"""Resolution handlers: one per routing rule.

Brief:
  Every handler takes the Query and the lookup key captured by the router and
  returns exactly one ResolutionOutcome. Store failures never escape:

  - local-zone handlers fail closed (no rows -> NXDOMAIN, store fault ->
    SERVFAIL);
  - PTR handlers fail open (no rows or store fault -> forward upstream), and
    answer REFUSED for names that do not encode an address.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Callable, List, Optional

from dnslib import AAAA, CNAME, MX, PTR, QTYPE, RCODE, RR, A

from .address import ipv4_from_ptr, ipv6_candidates_from_ptr
from .errors import MalformedAddress, StoreUnavailable
from .models import (
    Answered,
    Failed,
    Forwarded,
    Query,
    Record,
    ResolutionOutcome,
    normalize_name,
)
from .store.base import BaseRecordStore

logger = logging.getLogger(__name__)

LOOPBACK_V4 = "127.0.0.1"
LOOPBACK_V6 = "::1"
DEFAULT_MX_PRIORITY = 10

Handler = Callable[[Query, Optional[str]], ResolutionOutcome]


def _fqdn(name: str) -> str:
    return name.rstrip(".") + "."


class ResolutionHandlers:
    """Handlers for the local zone, reverse lookups and forwarding.

    Inputs (constructor):
      - store: Record store adapter shared by all handler threads.
      - suffix: Local zone suffix, e.g. 'internal.example'.
      - ttl: TTL applied to every locally synthesized answer.

    Outputs:
      - Instance whose bound methods are used as RoutingRule handlers.

    Example:
      >>> from beacon.store.memory import MemoryRecordStore
      >>> h = ResolutionHandlers(MemoryRecordStore(), "internal.example", 300)
      >>> h.local_a(Query.create("nope.internal.example", QTYPE.A), "nope")
      Failed(rcode=3)
    """

    def __init__(self, store: BaseRecordStore, suffix: str, ttl: int):
        self.store = store
        self.suffix = normalize_name(suffix)
        self.ttl = int(ttl)

    def _rr(self, query: Query, rtype: int, rdata) -> RR:
        return RR(
            rname=_fqdn(query.name),
            rtype=rtype,
            rclass=1,
            ttl=self.ttl,
            rdata=rdata,
        )

    # ------------------------------------------------------------------
    # localhost
    # ------------------------------------------------------------------
    def localhost_a(
        self, query: Query, key: Optional[str] = None
    ) -> ResolutionOutcome:
        return Answered((self._rr(query, QTYPE.A, A(LOOPBACK_V4)),), self.ttl)

    def localhost_aaaa(
        self, query: Query, key: Optional[str] = None
    ) -> ResolutionOutcome:
        return Answered((self._rr(query, QTYPE.AAAA, AAAA(LOOPBACK_V6)),), self.ttl)

    # ------------------------------------------------------------------
    # Local zone
    # ------------------------------------------------------------------
    def _local_lookup(
        self, query: Query, label: str, rtype: str
    ) -> Optional[List[Record]]:
        """Brief: Fetch rows for a local-zone query.

        Inputs:
          - query: Incoming query (for logging).
          - label: Bare label captured by the router.
          - rtype: Record type to filter on.

        Outputs:
          - list[Record] on success, None when the store is unavailable.
        """

        try:
            return self.store.by_name_and_type(label, rtype)
        except StoreUnavailable as e:
            logger.warning(
                "Record store unavailable for %s %s: %s", query.name, rtype, e
            )
            return None

    def _local(
        self,
        query: Query,
        label: Optional[str],
        rtype: str,
        build: Callable[[Record], Optional[RR]],
        first_only: bool = False,
    ) -> ResolutionOutcome:
        records = self._local_lookup(query, label or "", rtype)
        if records is None:
            return Failed(RCODE.SERVFAIL)
        if not records:
            logger.debug("No %s record for %s", rtype, query.name)
            return Failed(RCODE.NXDOMAIN)

        answers: List[RR] = []
        for record in records:
            rr = build(record)
            if rr is None:
                logger.warning(
                    "Skipping %s record %r: missing or invalid data", rtype, record
                )
                continue
            answers.append(rr)
            if first_only:
                break
        return Answered(tuple(answers), self.ttl)

    def local_a(self, query: Query, key: Optional[str]) -> ResolutionOutcome:
        def build(record: Record) -> Optional[RR]:
            try:
                addr = ipaddress.IPv4Address(record.ipv4_address or "")
            except ValueError:
                return None
            return self._rr(query, QTYPE.A, A(str(addr)))

        return self._local(query, key, "A", build)

    def local_aaaa(self, query: Query, key: Optional[str]) -> ResolutionOutcome:
        def build(record: Record) -> Optional[RR]:
            try:
                addr = ipaddress.IPv6Address(record.ipv6_address or "")
            except ValueError:
                return None
            return self._rr(query, QTYPE.AAAA, AAAA(str(addr)))

        return self._local(query, key, "AAAA", build)

    def local_cname(self, query: Query, key: Optional[str]) -> ResolutionOutcome:
        def build(record: Record) -> Optional[RR]:
            if not record.cname:
                return None
            return self._rr(query, QTYPE.CNAME, CNAME(_fqdn(record.cname)))

        # A name owns at most one CNAME; extra rows are ignored.
        return self._local(query, key, "CNAME", build, first_only=True)

    def local_mx(self, query: Query, key: Optional[str]) -> ResolutionOutcome:
        def build(record: Record) -> Optional[RR]:
            if not record.cname:
                return None
            pref = (
                DEFAULT_MX_PRIORITY if record.priority is None else int(record.priority)
            )
            return self._rr(query, QTYPE.MX, MX(_fqdn(record.cname), pref))

        return self._local(query, key, "MX", build)

    # ------------------------------------------------------------------
    # Reverse lookups
    # ------------------------------------------------------------------
    def _ptr_answer(
        self, query: Query, lookup: Callable[[], List[Record]]
    ) -> ResolutionOutcome:
        try:
            records = lookup()
        except StoreUnavailable as e:
            logger.warning(
                "Record store unavailable for PTR %s, forwarding: %s", query.name, e
            )
            return Forwarded("store_unavailable")
        if not records:
            return Forwarded("no_local_record")

        answers = tuple(
            self._rr(query, QTYPE.PTR, PTR(_fqdn(f"{r.name}.{self.suffix}")))
            for r in records
            if r.name
        )
        return Answered(answers, self.ttl)

    def ptr_v4(self, query: Query, key: Optional[str] = None) -> ResolutionOutcome:
        try:
            address = ipv4_from_ptr(query.name)
        except MalformedAddress as e:
            logger.debug("Refusing PTR query: %s", e)
            return Failed(RCODE.REFUSED)
        return self._ptr_answer(query, lambda: self.store.by_ipv4(address))

    def ptr_v6(self, query: Query, key: Optional[str] = None) -> ResolutionOutcome:
        try:
            candidates = ipv6_candidates_from_ptr(query.name)
        except MalformedAddress as e:
            logger.debug("Refusing PTR query: %s", e)
            return Failed(RCODE.REFUSED)
        return self._ptr_answer(query, lambda: self.store.by_ipv6(candidates))

    # ------------------------------------------------------------------
    # Everything else
    # ------------------------------------------------------------------
    def forward(self, query: Query, key: Optional[str] = None) -> ResolutionOutcome:
        return Forwarded("not_authoritative")
