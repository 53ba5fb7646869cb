"""
Brief: Tests for beacon.router rule ordering and predicates.

Inputs:
  - None

Outputs:
  - None
"""

from unittest.mock import MagicMock

import pytest
from dnslib import QTYPE

from beacon.handlers import ResolutionHandlers
from beacon.models import Forwarded, Query
from beacon.router import (
    CatchAll,
    ExactName,
    LabelUnderSuffix,
    QueryRouter,
    ReverseZone,
    RoutingRule,
    build_rules,
)

SUFFIX = "internal.example"


@pytest.fixture
def router(zone_store):
    handlers = ResolutionHandlers(zone_store, SUFFIX, 300)
    return QueryRouter(build_rules(SUFFIX, handlers))


def _rule(router, name, qtype):
    return router.route(Query.create(name, qtype)).rule.name


def test_build_rules_order(router):
    """Brief: Rules are evaluated localhost first, forward last."""
    assert [r.name for r in router.rules] == [
        "localhost_a",
        "localhost_aaaa",
        "local_a",
        "local_aaaa",
        "local_cname",
        "local_mx",
        "ptr_v4",
        "ptr_v6",
        "forward",
    ]


@pytest.mark.parametrize(
    "name,qtype,expected",
    [
        ("localhost", QTYPE.A, "localhost_a"),
        ("LOCALHOST.", QTYPE.A, "localhost_a"),
        ("localhost", QTYPE.AAAA, "localhost_aaaa"),
        ("www.internal.example", QTYPE.A, "local_a"),
        ("www.internal.example", QTYPE.AAAA, "local_aaaa"),
        ("alias.internal.example", QTYPE.CNAME, "local_cname"),
        ("mail.internal.example", QTYPE.MX, "local_mx"),
        ("4.3.2.1.in-addr.arpa", QTYPE.PTR, "ptr_v4"),
        ("1.0.ip6.arpa", QTYPE.PTR, "ptr_v6"),
        ("example.com", QTYPE.A, "forward"),
        ("www.internal.example", QTYPE.TXT, "forward"),
        ("internal.example", QTYPE.A, "forward"),
        ("wwwinternal.example", QTYPE.A, "forward"),
        ("4.3.2.1.in-addr.arpa", QTYPE.A, "forward"),
        ("localhost", QTYPE.MX, "forward"),
    ],
)
def test_route_selects_rule(router, name, qtype, expected):
    """Brief: Each query shape lands on the expected rule."""
    assert _rule(router, name, qtype) == expected


def test_localhost_never_reaches_local_zone(router):
    """Brief: localhost A is answered by the localhost rule, not local_a."""
    match = router.route(Query.create("localhost", QTYPE.A))
    assert match.rule.name == "localhost_a"


def test_label_capture_strips_suffix():
    """Brief: LabelUnderSuffix captures the label, including inner dots."""
    pred = LabelUnderSuffix(SUFFIX, QTYPE.A)
    assert pred.match(Query.create("www.internal.example", QTYPE.A)) == "www"
    assert pred.match(Query.create("a.b.internal.example", QTYPE.A)) == "a.b"
    assert pred.match(Query.create("internal.example", QTYPE.A)) is None


def test_predicates_check_qtype():
    """Brief: Predicates do not match other query types."""
    assert ExactName("localhost", QTYPE.A).match(Query.create("localhost", QTYPE.AAAA)) is None
    assert ReverseZone("in-addr.arpa").match(Query.create("1.in-addr.arpa", QTYPE.A)) is None
    assert CatchAll().match(Query.create("anything", QTYPE.ANY)) == ""


def test_first_match_wins():
    """Brief: When two rules match, only the first handler runs."""
    first = MagicMock(return_value=Forwarded("first"))
    second = MagicMock(return_value=Forwarded("second"))
    router = QueryRouter(
        [
            RoutingRule("first", CatchAll(), first),
            RoutingRule("second", CatchAll(), second),
        ]
    )
    outcome = router.dispatch(Query.create("x.example", QTYPE.A))
    assert outcome == Forwarded("first")
    second.assert_not_called()


def test_route_without_match_raises():
    """Brief: A router whose rules all miss raises LookupError."""
    router = QueryRouter(
        [RoutingRule("only", ExactName("a", QTYPE.A), MagicMock())]
    )
    with pytest.raises(LookupError):
        router.route(Query.create("b", QTYPE.A))


def test_router_requires_rules():
    """Brief: An empty rule list is rejected."""
    with pytest.raises(ValueError):
        QueryRouter([])
