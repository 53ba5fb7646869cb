"""Ordered, first-match-wins query routing.

Brief:
  Each RoutingRule pairs a structured predicate with a handler. Predicates
  return the lookup key they capture (the bare label for local-zone rules) or
  None when they do not match. Rules are evaluated in declared order and the
  catch-all rule guarantees every query gets a handler.

Inputs:
  - Query values built by the transport layer.

Outputs:
  - RouteMatch(rule, key) for the first matching rule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional, Sequence, Tuple

from dnslib import QTYPE

from .address import IPV4_REVERSE_ZONE, IPV6_REVERSE_ZONE
from .handlers import Handler, ResolutionHandlers
from .models import Query, ResolutionOutcome, normalize_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExactName:
    """Matches one name (and query type) exactly; captures the name itself."""

    name: str
    qtype: int

    def match(self, query: Query) -> Optional[str]:
        if query.qtype == self.qtype and query.name == self.name:
            return query.name
        return None


@dataclass(frozen=True)
class LabelUnderSuffix:
    """Matches ``<label>.<suffix>``; captures ``<label>`` without the suffix.

    The match is anchored on a label boundary, so ``ainternal.example`` does
    not match suffix ``internal.example``. The captured label may itself
    contain dots.
    """

    suffix: str
    qtype: int

    def match(self, query: Query) -> Optional[str]:
        if query.qtype != self.qtype:
            return None
        tail = "." + self.suffix
        if len(query.name) <= len(tail) or not query.name.endswith(tail):
            return None
        return query.name[: -len(tail)]


@dataclass(frozen=True)
class ReverseZone:
    """Matches PTR-shaped names under a reverse zone.

    Only the zone and query type are checked here; the handler validates the
    address labels so malformed names are refused rather than forwarded.
    """

    zone: str
    qtype: int = QTYPE.PTR

    def match(self, query: Query) -> Optional[str]:
        if query.qtype != self.qtype:
            return None
        tail = "." + self.zone
        if len(query.name) <= len(tail) or not query.name.endswith(tail):
            return None
        return query.name[: -len(tail)]


@dataclass(frozen=True)
class CatchAll:
    """Matches every query."""

    def match(self, query: Query) -> Optional[str]:
        return ""


@dataclass(frozen=True)
class RoutingRule:
    """Named predicate/handler pair.

    Inputs:
      - name: Short identifier used in logs ('local_a', 'ptr_v4', ...).
      - predicate: ExactName, LabelUnderSuffix, ReverseZone or CatchAll.
      - handler: Callable (query, key) -> ResolutionOutcome.
    """

    name: str
    predicate: object
    handler: Handler


class RouteMatch(NamedTuple):
    rule: RoutingRule
    key: str


class QueryRouter:
    """
    Dispatches queries to the first rule whose predicate matches.

    Inputs:
      - rules: Ordered rules. The last rule should be a CatchAll; if no rule
        matches anyway, ``route`` raises LookupError.

    Outputs:
      - route(query) -> RouteMatch
      - dispatch(query) -> ResolutionOutcome

    Example:
      >>> from beacon.store.memory import MemoryRecordStore
      >>> handlers = ResolutionHandlers(MemoryRecordStore(), "internal.example", 60)
      >>> router = QueryRouter(build_rules("internal.example", handlers))
      >>> router.route(Query.create("localhost", QTYPE.A)).rule.name
      'localhost_a'
    """

    def __init__(self, rules: Iterable[RoutingRule]):
        self._rules: Tuple[RoutingRule, ...] = tuple(rules)
        if not self._rules:
            raise ValueError("QueryRouter needs at least one rule")

    @property
    def rules(self) -> Sequence[RoutingRule]:
        return self._rules

    def route(self, query: Query) -> RouteMatch:
        for rule in self._rules:
            key = rule.predicate.match(query)  # type: ignore[attr-defined]
            if key is not None:
                return RouteMatch(rule, key)
        raise LookupError(f"no routing rule matched {query.name} {query.type_name}")

    def dispatch(self, query: Query) -> ResolutionOutcome:
        match = self.route(query)
        logger.debug(
            "Routing %s %s via rule %s (key=%r)",
            query.name,
            query.type_name,
            match.rule.name,
            match.key,
        )
        return match.rule.handler(query, match.key)


def build_rules(suffix: str, handlers: ResolutionHandlers) -> Tuple[RoutingRule, ...]:
    """Brief: Build the standard rule list for a local zone.

    Inputs:
      - suffix: Local zone suffix.
      - handlers: ResolutionHandlers providing the per-rule logic.

    Outputs:
      - tuple[RoutingRule, ...] in evaluation order: localhost, local zone
        A/AAAA/CNAME/MX, IPv4 PTR, IPv6 PTR, catch-all forward.
    """

    zone = normalize_name(suffix)
    return (
        RoutingRule(
            "localhost_a", ExactName("localhost", QTYPE.A), handlers.localhost_a
        ),
        RoutingRule(
            "localhost_aaaa",
            ExactName("localhost", QTYPE.AAAA),
            handlers.localhost_aaaa,
        ),
        RoutingRule("local_a", LabelUnderSuffix(zone, QTYPE.A), handlers.local_a),
        RoutingRule(
            "local_aaaa", LabelUnderSuffix(zone, QTYPE.AAAA), handlers.local_aaaa
        ),
        RoutingRule(
            "local_cname", LabelUnderSuffix(zone, QTYPE.CNAME), handlers.local_cname
        ),
        RoutingRule("local_mx", LabelUnderSuffix(zone, QTYPE.MX), handlers.local_mx),
        RoutingRule("ptr_v4", ReverseZone(IPV4_REVERSE_ZONE), handlers.ptr_v4),
        RoutingRule("ptr_v6", ReverseZone(IPV6_REVERSE_ZONE), handlers.ptr_v6),
        RoutingRule("forward", CatchAll(), handlers.forward),
    )
