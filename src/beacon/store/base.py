"""Abstract record store interface shared by every storage backend.

This module defines:

- ByNameAndType / ByIPv4 / ByIPv6: the three lookup filters the resolver uses.
- BaseRecordStore: the uniform query interface. Concrete backends implement
  the private ``_by_*`` helpers; callers use ``lookup`` (or the ``by_*``
  wrappers) and only ever see ``StoreUnavailable`` on failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import StoreUnavailable
from ..models import Record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ByNameAndType:
    """Rows keyed on the bare label with the given record type."""

    name: str
    type: str


@dataclass(frozen=True)
class ByIPv4:
    """Rows whose ipv4 address equals ``address``."""

    address: str


@dataclass(frozen=True)
class ByIPv6:
    """Rows matching any candidate from an ip6.arpa name.

    IPv6 candidates are compared case-insensitively with the ipv6 column,
    dotted-quad candidates (IPv4-mapped hosts) with the ipv4 column.
    """

    candidates: Tuple[str, ...]

    @property
    def ipv6(self) -> Tuple[str, ...]:
        return tuple(c for c in self.candidates if ":" in c)

    @property
    def ipv4(self) -> Tuple[str, ...]:
        return tuple(c for c in self.candidates if ":" not in c)


RecordFilter = Union[ByNameAndType, ByIPv4, ByIPv6]


def _priority(value: Any, name: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer priority %r on record %r", value, name)
        return None


def row_to_record(row: Union[Mapping[str, Any], Sequence[Any]]) -> Record:
    """Brief: Build a Record from a ``dns_records`` row.

    Inputs:
      - row: Mapping keyed by column name, or a sequence in column order
        (name, type, ipv4address, ipv6address, cname, priority).

    Outputs:
      - Record instance. A priority that is not an integer becomes None, so
        one bad cell never fails the whole lookup.
    """

    if isinstance(row, Mapping):
        values = [
            row.get("name"),
            row.get("type"),
            row.get("ipv4address"),
            row.get("ipv6address"),
            row.get("cname"),
            row.get("priority"),
        ]
    else:
        values = list(row)
    name, rtype, ipv4, ipv6, cname, priority = values[:6]
    return Record(
        name=str(name),
        type=str(rtype).upper(),
        ipv4_address=ipv4 or None,
        ipv6_address=ipv6 or None,
        cname=cname or None,
        priority=_priority(priority, name),
    )


class BaseRecordStore:
    """Brief: Read-only query interface over the zone's record data.

    Implementations must be safe to call from many handler threads at once.

    Inputs (constructor):
      - backend specific.

    Outputs:
      - lookup(filter) -> list[Record]; an empty list is a normal miss.

    Notes:
      - Any exception raised by a backend helper is converted to
        StoreUnavailable here, so resolution handlers have a single failure
        path regardless of driver.
    """

    # URL schemes handled by this backend (see beacon.store.open_store).
    aliases: Tuple[str, ...] = ()

    def lookup(self, record_filter: RecordFilter) -> List[Record]:
        """Brief: Run one filter against the store.

        Inputs:
          - record_filter: ByNameAndType, ByIPv4 or ByIPv6.

        Outputs:
          - list[Record]: matching rows, possibly empty.

        Raises:
          - StoreUnavailable: on any backend failure.
          - TypeError: for an unknown filter type (programming error).
        """

        if isinstance(record_filter, ByNameAndType):
            fn = self._by_name_and_type
        elif isinstance(record_filter, ByIPv4):
            fn = self._by_ipv4
        elif isinstance(record_filter, ByIPv6):
            fn = self._by_ipv6
        else:
            raise TypeError(f"unsupported record filter {record_filter!r}")

        try:
            return list(fn(record_filter))
        except StoreUnavailable:
            raise
        except Exception as e:
            logger.warning("Record store lookup %r failed: %s", record_filter, e)
            raise StoreUnavailable(f"record store lookup failed: {e}") from e

    def by_name_and_type(self, name: str, rtype: str) -> List[Record]:
        return self.lookup(ByNameAndType(name, rtype.upper()))

    def by_ipv4(self, address: str) -> List[Record]:
        return self.lookup(ByIPv4(address))

    def by_ipv6(self, candidates: Sequence[str]) -> List[Record]:
        return self.lookup(ByIPv6(tuple(candidates)))

    def health_check(self) -> bool:
        """Return True when a trivial lookup succeeds."""

        try:
            self.lookup(ByNameAndType("", "A"))
        except StoreUnavailable:
            return False
        return True

    def close(self) -> None:
        """Release backend resources; default is a no-op."""

        return None

    # Backend hooks --------------------------------------------------------

    def _by_name_and_type(
        self, f: ByNameAndType
    ) -> List[Record]:  # pragma: no cover - interface only
        raise NotImplementedError

    def _by_ipv4(self, f: ByIPv4) -> List[Record]:  # pragma: no cover - interface only
        raise NotImplementedError

    def _by_ipv6(self, f: ByIPv6) -> List[Record]:  # pragma: no cover - interface only
        raise NotImplementedError


def ipv6_where_clause(
    f: ByIPv6, placeholder: str
) -> Tuple[Optional[str], List[str]]:
    """Brief: Build the SQL WHERE fragment for a ByIPv6 filter.

    Inputs:
      - f: ByIPv6 filter.
      - placeholder: Driver parameter marker ('?' for sqlite3, '%s' for psycopg).

    Outputs:
      - (clause, params): clause is None when there are no candidates.
    """

    parts: List[str] = []
    params: List[str] = []
    if f.ipv6:
        parts.append(
            "lower(ipv6address) IN (%s)" % ", ".join([placeholder] * len(f.ipv6))
        )
        params.extend(c.lower() for c in f.ipv6)
    if f.ipv4:
        parts.append(
            "ipv4address IN (%s)" % ", ".join([placeholder] * len(f.ipv4))
        )
        params.extend(f.ipv4)
    if not parts:
        return None, []
    return " OR ".join(parts), params
